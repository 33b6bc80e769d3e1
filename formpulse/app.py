import base64
import logging

from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .analysis.diagnosis import build_report
from .config import settings
from .events import utcnow
from .ingestion import decode_body, normalize, persist
from .reports import InsightReport
from .store import StoreUnavailable, build_store

logging.basicConfig(level=settings.LOG_LEVEL.upper(),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME, version="0.1.0")

# collectors are hit cross-origin from every embedding site
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

store = build_store()

COLLECTOR_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Timing-Allow-Origin": "*",
}
PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def _accept(payload, background: BackgroundTasks):
    result = normalize(payload, received_at=utcnow(), max_events=settings.MAX_BATCH_EVENTS)
    if result.dropped:
        logger.info("dropped %d invalid records", result.dropped)
    # stored after the response is sent
    background.add_task(persist, store, result.events)
    return result


async def _collect(request: Request, background: BackgroundTasks) -> JSONResponse:
    # never an error status: a failing collector must not make browsers resend
    try:
        raw = await request.body()
        payload = decode_body(raw, request.headers.get("content-type"))
        result = _accept(payload, background)
        body = {"status": "queued", "accepted": result.accepted, "dropped": result.dropped}
    except Exception:
        logger.exception("collector failed")
        body = {"status": "queued", "accepted": 0, "dropped": 0}
    return JSONResponse(body, status_code=200, headers=COLLECTOR_HEADERS)


@app.get("/health")
def health():
    return {"ok": True, "service": "formpulse-api", "store": store.ping()}


@app.post("/ingest")
async def ingest(request: Request, background: BackgroundTasks):
    """
    Accept a batch {projectId, sessionId, events[]}, a single flat event,
    or a list of flat events, as JSON, base64 text/plain or form-encoded.
    """
    return await _collect(request, background)


@app.post("/v1")
async def ingest_v1(request: Request, background: BackgroundTasks):
    return await _collect(request, background)


@app.options("/ingest")
@app.options("/v1")
@app.options("/p")
def preflight():
    return Response(status_code=204, headers=COLLECTOR_HEADERS)


@app.get("/p")
def pixel_get(request: Request, background: BackgroundTasks):
    try:
        _accept(dict(request.query_params), background)
    except Exception:
        logger.exception("pixel collector failed")
    return Response(PIXEL, media_type="image/gif", headers=COLLECTOR_HEADERS)


@app.post("/p")
async def pixel_post(request: Request, background: BackgroundTasks):
    try:
        payload = dict(request.query_params)
        body = decode_body(await request.body(), request.headers.get("content-type"))
        if isinstance(body, dict):
            payload.update(body)
        elif body is not None:
            payload = body
        _accept(payload, background)
    except Exception:
        logger.exception("pixel collector failed")
    return Response(status_code=204, headers=COLLECTOR_HEADERS)


@app.get("/projects/{project_id}/insights", response_model=InsightReport, response_model_by_alias=True)
def insights(
    project_id: str,
    days: int = Query(settings.DEFAULT_WINDOW_DAYS, ge=1, le=settings.RETENTION_DAYS,
                      description="trailing window in days"),
):
    try:
        report = build_report(store, project_id, window_days=days)
    except StoreUnavailable as e:
        logger.error("insights for %s failed: %s", project_id, e)
        return JSONResponse(status_code=503, content={"error": "event store unavailable"},
                            headers={"Cache-Control": "no-store"})
    return JSONResponse(report.model_dump(mode="json", by_alias=True),
                        headers={"Cache-Control": "no-store"})
