import logging
import time

from supabase import Client, create_client
from supabase.client import ClientOptions

from beautybook.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds

CONNECTION_TEST_TABLE = "pro_subscriptions"


def get_supabase_client() -> Client:
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    # A fresh initialization error is re-raised instead of hammering Supabase
    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            logger.debug(
                f"Supabase client unavailable (retry in {retry_in}s). Last error: {_last_error}"
            )
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error

        logger.info("Error cache expired, retrying Supabase initialization...")
        _last_error = None
        _last_error_time = 0

    try:
        Config.validate()

        if not Config.SUPABASE_URL:
            raise RuntimeError(
                "SUPABASE_URL environment variable is not set. "
                "Please configure it with your Supabase project URL (e.g., https://xxxxx.supabase.co)"
            )
        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Current value: '{Config.SUPABASE_URL}'. "
                f"Expected: 'https://{Config.SUPABASE_URL}'"
            )

        masked_url = (
            Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
        )
        logger.info(f"Initializing Supabase client with URL: {masked_url}")

        _supabase_client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=30,
                schema="public",
                auto_refresh_token=False,
                persist_session=False,
                headers={"X-Client-Info": "beautybook-api/0.4"},
            ),
        )

        _test_connection_internal(_supabase_client)

        return _supabase_client

    except Exception as e:
        _supabase_client = None
        _last_error = e
        _last_error_time = time.time()

        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
            exc_info=True,
        )

        from beautybook.utils.sentry_context import capture_error

        capture_error(
            e,
            context_type="supabase_config",
            context_data={
                "supabase_url_set": bool(Config.SUPABASE_URL),
                "supabase_key_set": bool(Config.SUPABASE_KEY),
                "error_type": type(e).__name__,
            },
            tags={"component": "supabase_client"},
        )

        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def _test_connection_internal(client: Client) -> bool:
    """
    Test database connection using the provided client directly.

    Takes the client as a parameter so it can run during initialization
    without recursing into get_supabase_client().
    """
    try:
        client.table(CONNECTION_TEST_TABLE).select("user_id").limit(1).execute()
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {type(e).__name__}: {e}")
        raise RuntimeError(f"Database connection failed: {e}") from e


def init_db():
    try:
        _test_connection_internal(get_supabase_client())
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def get_initialization_status() -> dict:
    """Client state for the health endpoint."""
    return {
        "initialized": _supabase_client is not None,
        "has_error": _last_error is not None,
        "error_message": str(_last_error) if _last_error else None,
        "error_type": type(_last_error).__name__ if _last_error else None,
    }


def cleanup_supabase_client():
    """Drop the cached client and close its PostgREST session on shutdown."""
    global _supabase_client

    try:
        if _supabase_client is not None:
            postgrest = getattr(_supabase_client, "postgrest", None)
            session = getattr(postgrest, "session", None)
            if session is not None and hasattr(session, "close"):
                session.close()
            logger.info("Supabase client cleanup completed")
    except Exception as e:
        logger.warning(f"Error during Supabase client cleanup: {e}")
    finally:
        _supabase_client = None


def reset_supabase_client() -> bool:
    """
    Reset the Supabase client so the next call builds a fresh connection pool.

    Used after HTTP/2 protocol errors caused by server-side connection resets.

    Returns:
        bool: True if a cached client was dropped
    """
    global _supabase_client, _last_error, _last_error_time

    had_client = _supabase_client is not None
    cleanup_supabase_client()
    _last_error = None
    _last_error_time = 0
    if had_client:
        logger.info("Supabase client reset - next request will create fresh connection")
    return had_client


HTTP2_ERROR_INDICATORS = (
    "streaminputs.send_headers",
    "streaminputs.recv_data",
    "connectioninputs.recv_data",
    "connectionstate.closed",
    "streamidtoolowerror",
    "connectionterminated",
    "server disconnected",
    "stream closed",
    "connection reset by peer",
    "goaway",
    "h2_error",
    "http2 error",
)


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    Args:
        error: The exception to check

    Returns:
        bool: True if this is an HTTP/2 protocol error requiring reset
    """
    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if "protocolerror" in error_type:
        return True

    if any(indicator in error_str for indicator in HTTP2_ERROR_INDICATORS):
        return True

    if "invalid input" in error_str and ("state" in error_str or "inputs" in error_str):
        return True

    if error.__cause__ is not None and isinstance(error.__cause__, Exception):
        return is_http2_protocol_error(error.__cause__)

    return False


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that performs the database operation.
                   It receives the Supabase client as its only argument.
        max_retries: Maximum number of retry attempts (default: 2)
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Raises:
        Exception: The last error when it is not retryable or retries are exhausted

    Example:
        def load_row(client):
            return client.table("pro_subscriptions").select("*").eq("user_id", uid).execute()

        result = execute_with_retry(load_row, operation_name="load_subscription")
    """
    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            if not is_http2_protocol_error(e) or attempt >= max_retries:
                if is_http2_protocol_error(e):
                    logger.error(
                        f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                    )
                raise

            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(0.1)

    raise RuntimeError(f"{operation_name} failed with no error captured")
