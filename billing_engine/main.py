import logging
import uuid

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from billing_engine.api.billing import router as billing_router
from billing_engine.errors import register_error_handlers
from billing_engine.services.object_storage import get_storage

app = FastAPI(title="billing_engine API")
logger = logging.getLogger(__name__)

register_error_handlers(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(billing_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _ensure_storage():
    try:
        get_storage()
    except Exception:
        logger.exception("Failed to initialise batch file storage during startup")
