from fastapi import FastAPI

from servewrap.api.debug import router as debug_router
from servewrap.api.items import serve_api
from servewrap.buckets import BucketedStatsOptions
from servewrap.config import get_settings
from servewrap.handler import HandlerOptions, std_handler
from servewrap.observability.logging import configure_logging
from servewrap.observability.metrics import get_metrics
from servewrap.observability.middleware import RequestContextMiddleware
from servewrap.security import BrowserHeadersMiddleware


def create_app() -> FastAPI:
    settings = get_settings()
    metrics = get_metrics()

    app = FastAPI(title="servewrap", version="0.1.0")
    app.add_middleware(BrowserHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(debug_router)

    api = std_handler(
        serve_api,
        HandlerOptions(
            quiet_logging_if_successful=settings.quiet_logging_if_successful,
            status_code_counters=metrics.status_codes,
            status_code_counters_full=metrics.status_codes_full,
            bucketed_stats=BucketedStatsOptions(
                started=metrics.bucket_started,
                finished=metrics.bucket_finished,
            ),
        ),
    )
    app.add_route("/api/{rest:path}", api)

    @app.on_event("startup")
    def _startup() -> None:
        configure_logging(get_settings().log_level)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
