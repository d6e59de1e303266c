# ingest/app/main.py
import logging
import time
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .dashboard import DashboardService, utcnow
from .db import MemoryStore, Store, TimescaleStore, close_db_pool, ensure_schema, init_db_pool
from .deadline import bounded
from .durations import parse_duration
from .errors import PipelineError, StoreQueryFailed, StoreWriteFailed
from .ingestion import IngestionService
from .schemas import HostDetails, HostOverview, IngestAck, MetricPoint
from .status import StatusThresholds

logger = logging.getLogger(__name__)


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_dashboard(request: Request) -> DashboardService:
    return request.app.state.dashboard


async def open_store(settings: Settings) -> Store:
    if settings.store_backend == "memory":
        logger.warning("using the in-memory store, data is lost on restart")
        return MemoryStore()
    pool = await init_db_pool(settings.dsn, settings.pool_min_size, settings.pool_max_size)
    await ensure_schema(pool)
    store = TimescaleStore(pool)
    await store.ping(timeout=settings.store_timeout_seconds)
    logger.info("connected to timescaledb")
    return store


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None, clock=utcnow) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Metrics Ingest API")
    app.state.settings = settings

    @app.on_event("startup")
    async def startup():
        app.state.store = store or await open_store(settings)
        app.state.ingestion = IngestionService(
            app.state.store,
            process_threshold=settings.process_threshold_percent,
            timeout=settings.store_timeout_seconds,
        )
        app.state.dashboard = DashboardService(
            app.state.store,
            active_lookback=settings.active_lookback,
            details_lookback=settings.details_lookback,
            thresholds=StatusThresholds(active_window=settings.active_lookback, grace=settings.status_grace),
            timeout=settings.store_timeout_seconds,
            clock=clock,
        )

    @app.on_event("shutdown")
    async def shutdown():
        await close_db_pool()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        latency_ms = (time.perf_counter() - started) * 1000
        level = logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        client = request.client.host if request.client else "-"
        logger.log(level, "%3d | %8.1fms | %15s | %-7s %s",
                   response.status_code, latency_ms, client, request.method, request.url.path)
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        else:
            logger.warning("%s %s rejected: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.post("/api/stats", response_model=IngestAck)
    async def post_stats(request: Request, ingestion: IngestionService = Depends(get_ingestion)):
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type != "application/json":
            raise HTTPException(status_code=415, detail="Content-Type must be application/json")
        body = await request.body()
        return await bounded(request, ingestion.ingest(body), settings.store_timeout_seconds, StoreWriteFailed)

    @app.get("/api/dashboard/hosts/overview", response_model=List[HostOverview])
    async def hosts_overview(request: Request, dashboard: DashboardService = Depends(get_dashboard)):
        return await bounded(request, dashboard.overview(), settings.store_timeout_seconds, StoreQueryFailed)

    @app.get("/api/dashboard/host/{host_id}/details", response_model=HostDetails)
    async def host_details(request: Request, host_id: str, dashboard: DashboardService = Depends(get_dashboard)):
        return await bounded(request, dashboard.details(host_id), settings.store_timeout_seconds, StoreQueryFailed)

    @app.get("/api/dashboard/host/{host_id}/metrics/{metric_name}", response_model=List[MetricPoint])
    async def host_metric_history(
        request: Request,
        host_id: str,
        metric_name: str,
        range_: str = Query("1h", alias="range"),
        aggregate: str = Query("30s"),
        dashboard: DashboardService = Depends(get_dashboard),
    ):
        lookback = parse_duration(range_, message="Invalid range duration format")
        window = parse_duration(aggregate, message="Invalid aggregate interval format")
        return await bounded(
            request,
            dashboard.history(host_id, metric_name, lookback, window),
            settings.store_timeout_seconds,
            StoreQueryFailed,
        )

    return app


app = create_app()


def main():
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.listen_host, port=settings.listen_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
