import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse

from . import __version__
from .errors import CapacityError, NotFoundError, StoreError, ValidationError
from .logging_utils import setup_logging
from .records import JobStatus
from .redis_client import get_redis
from .runtime import Runtime, build_runtime
from .schemas import (
    JobCreate,
    JobOut,
    MaxSubscribers,
    PriorityUpdate,
    SourceCreate,
    SourceOut,
    SourceUpdate,
)
from .settings import Settings, settings
from .ui import router as ui_router

log = logging.getLogger("api")

router = APIRouter()

def rt(request: Request) -> Runtime:
    return request.app.state.runtime

def _status_filter(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.lower())
    except ValueError:
        raise ValidationError(f"unknown status {value!r}") from None

# ---------- health ----------
@router.get("/healthz")
def healthz(request: Request):
    log.info("health ok", extra={"request_id": request.state.request_id, "event": "healthz"})
    return {"ok": True}

@router.get("/readyz")
def readyz(request: Request):
    runtime = rt(request)
    runtime.store.ping()
    if runtime.settings.redis_url:
        get_redis(runtime.settings.redis_url).ping()
    log.info("ready ok", extra={"request_id": request.state.request_id, "event": "readyz"})
    return {"ready": True}

# ---------- jobs ----------
@router.post("/jobs", response_model=JobOut, status_code=201)
def create_job(req: JobCreate, request: Request):
    manager = rt(request).manager
    job_id = manager.schedule(
        req.type,
        req.payload,
        req.priority,
        delay_ms=req.delay_ms,
        scheduled_for=req.scheduled_for,
        max_attempts=req.max_attempts,
    )
    log.info("job queued", extra={"request_id": request.state.request_id, "job_id": job_id, "event": "job_queued"})
    return JobOut.from_record(manager.get_job(job_id))

@router.get("/jobs", response_model=list[JobOut])
def list_jobs(request: Request, status: str | None = None, type: str | None = None, limit: int = 50):
    jobs = rt(request).manager.list_jobs(_status_filter(status), type, max(1, min(limit, 500)))
    return [JobOut.from_record(j) for j in jobs]

@router.get("/jobs/pending", response_model=list[JobOut])
def list_pending(request: Request, limit: int = 50):
    return [JobOut.from_record(j) for j in rt(request).manager.list_pending(max(1, min(limit, 500)))]

@router.post("/jobs/cleanup")
def cleanup_jobs(request: Request, days: float = 30):
    deleted = rt(request).manager.cleanup_older_than(days)
    return {"deleted": deleted}

@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, request: Request):
    job = rt(request).manager.get_job(job_id)
    log.info("job fetched", extra={"request_id": request.state.request_id, "job_id": job_id, "event": "job_get"})
    return JobOut.from_record(job)

@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, request: Request):
    manager = rt(request).manager
    manager.get_job(job_id)
    if not manager.cancel(job_id):
        raise HTTPException(status_code=409, detail="job already finished")
    return {"cancelled": True}

@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, request: Request):
    manager = rt(request).manager
    manager.get_job(job_id)
    if not manager.retry(job_id):
        raise HTTPException(status_code=409, detail="only failed jobs can be retried")
    return {"retried": True}

@router.put("/jobs/{job_id}/priority")
def update_priority(job_id: str, req: PriorityUpdate, request: Request):
    manager = rt(request).manager
    manager.get_job(job_id)
    if not manager.update_priority(job_id, req.level):
        raise HTTPException(status_code=409, detail="job already finished")
    return JobOut.from_record(manager.get_job(job_id))

@router.get("/stats")
def queue_stats(request: Request):
    return rt(request).manager.stats()

@router.get("/processor/stats")
def processor_stats(request: Request):
    return rt(request).processor.get_stats()

@router.get("/processor/health")
def processor_health(request: Request):
    return rt(request).processor.get_health()

# ---------- scraping ----------
@router.get("/scraping/sources", response_model=list[SourceOut])
def list_sources(request: Request):
    return [SourceOut.from_source(s) for s in rt(request).store.list_sources()]

@router.post("/scraping/sources", response_model=SourceOut, status_code=201)
def add_source(req: SourceCreate, request: Request):
    scraper = rt(request).scraper
    source_id = scraper.add_source(req.name, req.base_url, req.rate_limit, req.is_active, req.config)
    return SourceOut.from_source(scraper.get_source(source_id))

@router.get("/scraping/sources/{source_id}", response_model=SourceOut)
def get_source(source_id: str, request: Request):
    return SourceOut.from_source(rt(request).scraper.get_source(source_id))

@router.patch("/scraping/sources/{source_id}", response_model=SourceOut)
def update_source(source_id: str, req: SourceUpdate, request: Request):
    scraper = rt(request).scraper
    if not scraper.update_source(source_id, **req.model_dump(exclude_unset=True)):
        raise NotFoundError("source", source_id)
    return SourceOut.from_source(scraper.get_source(source_id))

@router.post("/scraping/sources/{source_id}/scrape")
def force_scrape(source_id: str, request: Request):
    scraper = rt(request).scraper
    scraper.get_source(source_id)
    if not scraper.force_scrape(source_id):
        raise HTTPException(status_code=409, detail="source is inactive")
    return {"scraped": True}

@router.get("/scraping/stats")
def scraping_stats(request: Request):
    return rt(request).scraper.get_stats()

# ---------- live channel ----------
@router.get("/ws/stats")
def channel_stats(request: Request):
    return rt(request).channel.get_connection_stats()

@router.post("/ws/stats/reset")
def reset_channel_stats(request: Request):
    return {"reset_at": rt(request).channel.reset_stats().isoformat()}

@router.put("/ws/max-subscribers")
def set_max_subscribers(req: MaxSubscribers, request: Request):
    old = rt(request).channel.set_max_subscribers(req.max_subscribers)
    return {"old_max": old, "new_max": req.max_subscribers}

@router.websocket("/ws/jobs")
async def job_updates(websocket: WebSocket):
    channel = websocket.app.state.runtime.channel
    remote = websocket.client.host if websocket.client else "unknown"
    try:
        sub = channel.connect(remote)
    except CapacityError as e:
        log.warning(str(e), extra={"event": "subscriber_rejected"})
        await websocket.close(code=1013, reason="capacity")
        return
    await websocket.accept()

    # publishers on other threads only flag the loop
    loop = asyncio.get_running_loop()
    ready = asyncio.Event()
    sub.waker = lambda: loop.call_soon_threadsafe(ready.set)

    async def pump():
        while not sub.closed:
            ready.clear()
            while True:
                message = sub.poll()
                if message is None:
                    break
                await websocket.send_text(message)
            try:
                await asyncio.wait_for(ready.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        # evicted by heartbeat or shutdown
        await websocket.close(code=1001)

    async def listen():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            # pong or anything else counts as a heartbeat
            channel.touch(sub.connection_id)

    tasks = {asyncio.create_task(pump()), asyncio.create_task(listen())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                log.warning(
                    f"subscriber connection error: {task.exception()!r}",
                    extra={"connection_id": sub.connection_id, "event": "subscriber_error"},
                )
    finally:
        channel.disconnect(sub.connection_id)


def create_app(runtime: Runtime | None = None, app_settings: Settings | None = None) -> FastAPI:
    cfg = app_settings or (runtime.settings if runtime is not None else settings)
    setup_logging(cfg.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.runtime = runtime or build_runtime(cfg, role="api")
        app.state.runtime.start()
        yield
        app.state.runtime.stop()

    app = FastAPI(title="JobRelay API", version=__version__, lifespan=lifespan)
    app.include_router(ui_router)
    app.include_router(router)

    @app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": f"{exc.kind} not found"})

    @app.exception_handler(CapacityError)
    async def at_capacity(request: Request, exc: CapacityError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_unavailable(request: Request, exc: StoreError):
        log.error("store unavailable", extra={"event": "store_unavailable"})
        return JSONResponse(status_code=503, content={"detail": "store unavailable"})

    return app

app = create_app()
