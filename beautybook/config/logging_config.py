"""
Logging configuration with optional Grafana Loki shipping.

Console logging is always on: human-readable in development, one JSON object
per line elsewhere. When LOKI_ENABLED is set, records are also pushed to Loki
from a background thread so request handling never waits on the network.
"""

import atexit
import json
import logging
import queue
import sys
import threading

import httpx

from beautybook.config.config import Config

logger = logging.getLogger(__name__)

# Attributes that handlers may attach to records via `extra=`
CONTEXT_FIELDS = ("user_id", "event_id", "event_type", "stripe_subscription_id", "request_id")


class LokiLogHandler(logging.Handler):
    """
    Non-blocking log handler that pushes records to Grafana Loki.

    Records are queued by emit() and sent by a daemon worker. A full queue
    drops the record; Loki is best-effort and must never slow a webhook down.
    """

    def __init__(self, loki_url: str, tags: dict[str, str], max_queue_size: int = 5000):
        super().__init__()
        self.loki_url = loki_url
        self.tags = tags
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._shutdown = threading.Event()
        self._client = httpx.Client(
            timeout=httpx.Timeout(5.0, connect=2.0),
            limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
        )
        self._worker_thread = threading.Thread(target=self._worker, daemon=True)
        self._worker_thread.start()
        atexit.register(self.close)

    def _worker(self) -> None:
        while True:
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue

            try:
                response = self._client.post(self.loki_url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError:
                pass
            finally:
                self._queue.task_done()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            labels = {**self.tags, "level": record.levelname, "logger": record.name}
            event_type = getattr(record, "event_type", None)
            if event_type:
                labels["event_type"] = str(event_type)

            timestamp_ns = str(int(record.created * 1_000_000_000))
            payload = {"streams": [{"stream": labels, "values": [[timestamp_ns, self.format(record)]]}]}
            self._queue.put_nowait(payload)
        except queue.Full:
            pass
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if not self._shutdown.is_set():
            self._shutdown.set()
            self._worker_thread.join(timeout=5.0)
            self._client.close()
        super().close()


class StructuredFormatter(logging.Formatter):
    """JSON formatter that carries billing context fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> bool:
    """
    Configure application logging.

    Returns:
        bool: True if Loki integration was enabled, False otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    if Config.IS_DEVELOPMENT or Config.IS_TESTING:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        console_handler.setFormatter(StructuredFormatter())

    root_logger.addHandler(console_handler)

    loki_enabled = False
    if Config.LOKI_ENABLED:
        try:
            loki_handler = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={"app": Config.SERVICE_NAME, "environment": Config.APP_ENV},
            )
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(loki_handler)
            loki_enabled = True
            logger.info(f"Loki logging enabled: {Config.LOKI_PUSH_URL}")
        except Exception as e:
            logger.warning(f"Failed to configure Loki logging: {e}")
    else:
        logger.info("Loki logging disabled (LOKI_ENABLED=false)")

    # Set log levels for noisy libraries
    for noisy in ("httpx", "httpcore", "hpack", "stripe", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return loki_enabled
