import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from beautybook.config import Config

# Initialize logging with Loki integration
from beautybook.config.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """Sample everything in development, skip health checks, keep webhooks visible."""
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint == "/health":
            return 0.0

        # Low volume and worth tracing
        if endpoint == "/api/stripe/webhook":
            return 1.0

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")

ROUTE_MODULES = (
    ("health", "Health Check"),
    ("billing_webhook", "Stripe Webhook"),
    ("billing", "Billing"),
)


def create_app() -> FastAPI:
    app = FastAPI(
        title="BeautyBook Billing API",
        description="Stripe subscription reconciliation and billing endpoints for BeautyBook",
        version="0.4.0",
    )

    # With allow_credentials=True the origins must be listed explicitly
    allowed_origins = Config.cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )
    logger.info(f"CORS allowed origins: {allowed_origins}")

    for module_name, display_name in ROUTE_MODULES:
        module = __import__(f"beautybook.routes.{module_name}", fromlist=["router"])
        app.include_router(module.router)
        logger.info(f"  [OK] {display_name} ({module_name})")

    # ==================== Exception Handlers ====================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)

        from beautybook.utils.sentry_context import capture_error

        capture_error(
            exc,
            context_type="http_request",
            context_data={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(status_code=500, content={"error": "server_error"})

    # ==================== Lifecycle Events ====================

    @app.on_event("startup")
    async def on_startup():
        logger.info(f"Starting {Config.SERVICE_NAME} ({Config.APP_ENV})")

        missing_prices = [name for name, missing in Config.missing_stripe_prices().items() if missing]
        if missing_prices:
            logger.warning(f"Stripe price ids not configured: {', '.join(missing_prices)}")
        if not Config.STRIPE_WEBHOOK_SECRET:
            logger.warning("STRIPE_WEBHOOK_SECRET not configured - webhooks will be rejected")

        if Config.IS_TESTING:
            return

        try:
            Config.validate()
            from beautybook.config.supabase_config import init_db

            init_db()
        except Exception as e:
            # Keep serving; /health reports degraded mode
            logger.error(f"Database initialization failed, running degraded: {e}")

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down application...")

        from beautybook.config.supabase_config import cleanup_supabase_client

        cleanup_supabase_client()

    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting BeautyBook billing API server...")
    uvicorn.run("beautybook.main:app", host="0.0.0.0", port=8000, reload=Config.IS_DEVELOPMENT)
