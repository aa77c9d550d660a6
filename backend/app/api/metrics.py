"""Text exposition of the chat service counters for scraping."""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from app.monitoring.registry import registry

EXPOSITION_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse, include_in_schema=False)
def export_metrics() -> PlainTextResponse:
    return PlainTextResponse(registry.render(), media_type=EXPOSITION_CONTENT_TYPE)
