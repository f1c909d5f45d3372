import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.billing import router as billing_router
from app.errors import register_error_handlers
from app.logging import configure_logging

app = FastAPI(title="econnect_billing API")
logger = logging.getLogger(__name__)
configure_logging()
register_error_handlers(app)

app.include_router(billing_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
