"""HTTP routes for the relay."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, Union

import psutil
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict

from .config import Settings
from .errors import NotConnected
from .messages import (
    InvalidPhoneNumber,
    canonicalize_recipient,
    days_until,
    display_number,
    format_expiry_message,
    format_habit_message,
)
from .qr import index_page, pending_page, qr_page, render_qr_png
from .state import SendReceipt
from .supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()


def get_supervisor(request: Request) -> ConnectionSupervisor:
    return request.app.state.supervisor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uptime_seconds() -> float:
    return round(time.time() - psutil.Process().create_time(), 1)


def _failure(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


class ExpiryReminderRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    phone_number: Optional[str] = None
    product_name: Optional[str] = None
    expiry_date: Optional[str] = None
    days_until_expiry: Optional[int] = None
    product_category: Optional[str] = None


class HabitReminderRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    phone_number: Optional[str] = None
    habit_name: Optional[str] = None
    habit_icon: Optional[str] = None
    habit_description: Optional[str] = None
    user_name: Optional[str] = None


async def _deliver(
    supervisor: ConnectionSupervisor, settings: Settings, phone_number: str, body: str
) -> Union[SendReceipt, JSONResponse]:
    """Shared tail of the send routes; returns a receipt or an error response."""
    try:
        recipient = canonicalize_recipient(phone_number, settings.default_country_code)
    except InvalidPhoneNumber:
        return _failure(status.HTTP_400_BAD_REQUEST, "Phone number is invalid")

    logger.info("Sending to: %s", phone_number)
    try:
        return await supervisor.send_message(recipient, body)
    except NotConnected as exc:
        return _failure(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.user_message,
            qr_available=supervisor.status().has_qr_challenge,
        )


@router.get("/", response_class=HTMLResponse)
async def index(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> HTMLResponse:
    return HTMLResponse(index_page(supervisor.status()))


@router.get("/health")
async def health(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> JSONResponse:
    snapshot = supervisor.status()
    return JSONResponse(
        {
            "status": "ok",
            "whatsapp_ready": snapshot.ready,
            "is_initializing": snapshot.initializing,
            "has_qr": snapshot.has_qr_challenge,
            "timestamp": _now_iso(),
            "uptime_seconds": _uptime_seconds(),
        }
    )


@router.get("/status")
async def connection_status(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> JSONResponse:
    snapshot = supervisor.status()
    payload: dict[str, Any] = {
        "connected": snapshot.ready,
        "initializing": snapshot.initializing,
        "has_qr": snapshot.has_qr_challenge,
        **snapshot.as_dict(),
        "timestamp": _now_iso(),
    }
    if snapshot.ready:
        payload["device"] = snapshot.device
    elif snapshot.exhausted:
        payload["message"] = "Reconnect attempts exhausted. POST /init to retry."
    elif snapshot.initializing:
        payload["message"] = "Initializing WhatsApp..."
    else:
        payload["message"] = "WhatsApp not connected"
    return JSONResponse(payload)


@router.get("/qr", response_class=HTMLResponse)
async def qr_view(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> HTMLResponse:
    blob = supervisor.qr_challenge
    if not blob:
        return HTMLResponse(pending_page(supervisor.status()))
    return HTMLResponse(qr_page(blob))


@router.get("/qr.png")
async def qr_image(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> Response:
    blob = supervisor.qr_challenge
    if not blob:
        return JSONResponse({"detail": "No QR code pending"}, status_code=status.HTTP_404_NOT_FOUND)
    return Response(render_qr_png(blob), media_type="image/png", headers={"Cache-Control": "no-store"})


@router.post("/init")
async def init_connection(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> JSONResponse:
    if supervisor.status().ready:
        return JSONResponse({"success": True, "message": "Already connected"})
    started = await supervisor.start()
    message = "Initialization started" if started else "Initialization already in progress"
    return JSONResponse({"success": True, "message": message})


@router.post("/send")
async def send_expiry_reminder(
    payload: Optional[ExpiryReminderRequest] = None,
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    if payload is None:
        payload = ExpiryReminderRequest()
    if not payload.phone_number:
        return _failure(status.HTTP_400_BAD_REQUEST, "Phone number is required")
    if not payload.product_name:
        return _failure(status.HTTP_400_BAD_REQUEST, "Product name is required")

    days = payload.days_until_expiry
    if days is None and payload.expiry_date:
        days = days_until(payload.expiry_date)
    if days is None:
        return _failure(status.HTTP_400_BAD_REQUEST, "expiry_date or days_until_expiry is required")

    body = format_expiry_message(
        product_name=payload.product_name,
        expiry_date=payload.expiry_date or "",
        days_until_expiry=days,
        product_category=payload.product_category,
        brand_url=settings.brand_url,
    )
    result = await _deliver(supervisor, settings, payload.phone_number, body)
    if isinstance(result, JSONResponse):
        return result

    logger.info("Sent expiry reminder to %s", payload.phone_number)
    return JSONResponse(
        {
            "success": True,
            "message": "WhatsApp notification sent",
            "message_id": result.message_id,
            "timestamp": _now_iso(),
        }
    )


@router.post("/send-habit")
async def send_habit_reminder(
    payload: Optional[HabitReminderRequest] = None,
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    if payload is None:
        payload = HabitReminderRequest()
    if not payload.phone_number or not payload.habit_name:
        return _failure(
            status.HTTP_400_BAD_REQUEST,
            "Missing required fields: phone_number and habit_name are required",
        )

    body = format_habit_message(
        habit_name=payload.habit_name,
        habit_icon=payload.habit_icon,
        habit_description=payload.habit_description,
        user_name=payload.user_name,
    )
    result = await _deliver(supervisor, settings, payload.phone_number, body)
    if isinstance(result, JSONResponse):
        return result

    logger.info("Habit reminder sent to %s: %s", payload.phone_number, payload.habit_name)
    return JSONResponse(
        {
            "success": True,
            "message": "Habit reminder sent successfully",
            "data": {
                "phone_number": display_number(payload.phone_number),
                "habit_name": payload.habit_name,
                "sent_at": _now_iso(),
            },
        }
    )


@router.get("/habit-status")
async def habit_status(supervisor: ConnectionSupervisor = Depends(get_supervisor)) -> JSONResponse:
    ready = supervisor.status().ready
    return JSONResponse(
        {
            "success": True,
            "service": "habit-reminders",
            "status": "connected" if ready else "disconnected",
            "ready": ready,
            "timestamp": _now_iso(),
        }
    )
