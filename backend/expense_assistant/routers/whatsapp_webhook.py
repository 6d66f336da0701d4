import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from ..config import Settings, get_settings
from ..pipeline import ExpensePipeline
from ..whatsapp import WHATSAPP_OBJECT, parse_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


def get_whatsapp_pipeline(request: Request) -> ExpensePipeline:
    return request.app.state.whatsapp_pipeline


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
) -> str:
    if mode == "subscribe" and settings.whatsapp_verify_token and token == settings.whatsapp_verify_token:
        logger.info("WhatsApp webhook verified")
        return challenge or ""
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed.")


@router.post("/webhook")
async def receive_webhook(
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...),
    pipeline: ExpensePipeline = Depends(get_whatsapp_pipeline),
) -> dict[str, Any]:
    """Acknowledge immediately; messages are processed after the response is sent."""
    if payload.get("object") != WHATSAPP_OBJECT:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not a WhatsApp event.")
    messages = parse_webhook(payload)
    for message in messages:
        background_tasks.add_task(pipeline.handle, message)
    return {"status": "ok", "received": len(messages)}
