from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import gateway_config

from .auth import Authenticator
from .bridge import BridgeClientFactory
from .credentials import CredentialStore
from .dispatch import Dispatcher
from .errors import GatewayError, InternalError
from .manager import ConnectionManager
from .messages import ContactCardMessage, LocationMessage, TextMessage, media_message
from .registry import ConnectionRegistry, ConnectionStatus
from .schemas import (
    ConnectRequest,
    CreateGroupRequest,
    GroupDescriptionRequest,
    GroupParticipantsRequest,
    GroupSubjectRequest,
    LogoutRequest,
    PairingCodeRequest,
    PrivacySettingsRequest,
    SendContactRequest,
    SendLocationRequest,
    SendMediaRequest,
    SendMessageRequest,
)
from .transport import DEFAULT_PHONE_ID, normalize_phone_id


logger = logging.getLogger("wagateway.api")

SERVICE_NAME = "WhatsApp Gateway API"
VERSION = "2.0.0"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

ENDPOINTS = [
    ("POST", "/api/connect", "Connect with phone number"),
    ("POST", "/api/request-pairing-code", "Request pairing code for connection"),
    ("POST", "/api/logout", "Log out and forget the session credentials"),
    ("GET", "/api/status", "Get connection status for default phone ID"),
    ("GET", "/api/status/{phoneId}", "Get connection status for specific phone ID"),
    ("POST", "/api/send-message", "Send text message"),
    ("POST", "/api/send-media", "Send media (image, video, document, audio)"),
    ("POST", "/api/send-contact", "Send contact"),
    ("POST", "/api/send-location", "Send location"),
    ("POST", "/api/create-group", "Create a new group"),
    ("POST", "/api/group-add-participant", "Add participant to group"),
    ("POST", "/api/group-remove-participant", "Remove participant from group"),
    ("POST", "/api/group-set-subject", "Set group subject"),
    ("POST", "/api/group-set-description", "Set group description"),
    ("GET", "/api/group-info/{groupId}", "Get group information"),
    ("GET", "/api/groups", "Get all groups"),
    ("GET", "/api/contacts", "Get contacts for default phone ID"),
    ("GET", "/api/contacts/{phoneId}", "Get contacts for specific phone ID"),
    ("GET", "/api/chats", "Get chats for default phone ID"),
    ("GET", "/api/chats/{phoneId}", "Get chats for specific phone ID"),
    ("GET", "/api/privacy-settings", "Get privacy settings"),
    ("POST", "/api/privacy-settings", "Update privacy settings"),
    ("GET", "/metrics", "Prometheus metrics"),
    ("GET", "/health", "Health check"),
]


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    message = str(first.get("msg") or "Invalid request")
    if message.startswith("Value error, "):
        return message[len("Value error, "):]
    location = [
        str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")
    ]
    if first.get("type") == "json_invalid" or not location:
        return message
    return f"{'.'.join(location)}: {message}"


def create_app() -> FastAPI:
    cfg = gateway_config()
    registry = ConnectionRegistry()
    credentials = CredentialStore(cfg.auth_dir)
    client_factory = BridgeClientFactory(
        cfg.bridge_url,
        token=cfg.bridge_token,
        timeout=cfg.bridge_timeout,
        poll_wait=cfg.bridge_poll_wait,
    )
    manager = ConnectionManager(
        registry,
        client_factory,
        credentials,
        reconnect_delay=cfg.reconnect_delay,
        pairing_code_wait=cfg.pairing_code_wait,
        shutdown_timeout=cfg.shutdown_timeout,
        logout_on_shutdown=cfg.logout_on_shutdown,
    )
    dispatcher = Dispatcher(registry, domain=cfg.default_domain)
    authenticate = Authenticator(api_key=cfg.api_key, jwt_secret=cfg.jwt_secret)

    app = FastAPI(title="wagateway", version=VERSION)
    app.state.config = cfg
    app.state.registry = registry
    app.state.credentials = credentials
    app.state.client_factory = client_factory
    app.state.connection_manager = manager
    app.state.dispatcher = dispatcher

    logger.info(
        "stage=app_configured bridge_url=%s auth_dir=%s environment=%s",
        cfg.bridge_url,
        cfg.auth_dir,
        cfg.environment,
    )

    @app.on_event("startup")
    async def _startup() -> None:
        await manager.start(default_phone_number=cfg.default_phone_number)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        try:
            await manager.shutdown()
        finally:
            closer = getattr(client_factory, "aclose", None)
            if closer is not None:
                await closer()

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "event=request_failed path=%s message=%s error=%s",
                request.url.path,
                exc.message,
                exc.error,
            )
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"success": False, "message": _validation_message(exc)}, status_code=400
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse({"success": False, "message": "Endpoint not found"}, status_code=404)
        return JSONResponse(
            {"success": False, "message": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("event=unhandled_error path=%s", request.url.path)
        payload = InternalError(error=str(exc) if cfg.development else None).to_payload()
        return JSONResponse(payload, status_code=500)

    def _phone_id(value: Optional[str]) -> str:
        return normalize_phone_id(value)

    def _status_payload(phone_id: str) -> dict[str, Any]:
        record = manager.get_status(phone_id)
        if record is None:
            return {
                "success": False,
                "phoneId": phone_id,
                "status": ConnectionStatus.IDLE.value,
                "connected": False,
            }
        body: dict[str, Any] = {"success": True}
        body.update(record.to_payload())
        return body

    router = APIRouter(prefix="/api", dependencies=[Depends(authenticate)])

    @router.post("/connect")
    async def connect(payload: ConnectRequest):
        try:
            record = await manager.connect(payload.phone_number or "", payload.phone_id)
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("event=connect_failed phone_id=%s", payload.phone_id)
            raise InternalError(
                "Error connecting to WhatsApp", error=str(exc) if cfg.development else None
            ) from exc
        return {
            "success": True,
            "message": "Connection initiated",
            "phoneId": payload.phone_id,
            "status": record.status.value,
        }

    @router.post("/request-pairing-code")
    async def request_pairing_code(payload: PairingCodeRequest):
        try:
            record = await manager.request_pairing_code(
                payload.phone_number or "", payload.phone_id, force=payload.force
            )
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("event=pairing_request_failed phone_id=%s", payload.phone_id)
            raise InternalError(
                "Error requesting pairing code", error=str(exc) if cfg.development else None
            ) from exc

        pairing = record.pairing
        if pairing is not None and pairing.delivered and pairing.code:
            return JSONResponse(
                {
                    "success": True,
                    "message": "Pairing code requested successfully",
                    "pairingCode": pairing.code,
                    "phoneId": payload.phone_id,
                },
                headers=dict(NO_STORE_HEADERS),
            )
        return JSONResponse(
            {
                "success": True,
                "message": "Pairing code requested, please wait...",
                "phoneId": payload.phone_id,
            },
            headers=dict(NO_STORE_HEADERS),
        )

    @router.post("/logout")
    async def logout(payload: Optional[LogoutRequest] = None):
        phone_id = payload.phone_id if payload is not None else DEFAULT_PHONE_ID
        await manager.logout(phone_id)
        return {"success": True, "message": "Logged out successfully", "phoneId": phone_id}

    @router.get("/status")
    async def status_default():
        return JSONResponse(_status_payload(DEFAULT_PHONE_ID), headers=dict(NO_STORE_HEADERS))

    @router.get("/status/{phone_id}")
    async def status(phone_id: str):
        return JSONResponse(_status_payload(_phone_id(phone_id)), headers=dict(NO_STORE_HEADERS))

    @router.post("/send-message")
    async def send_message(payload: SendMessageRequest):
        message = TextMessage(text=payload.message or "")
        response = await dispatcher.send(payload.phone_id, payload.number or "", message)
        return {"success": True, "message": "Message sent successfully", "response": response}

    @router.post("/send-media")
    async def send_media(payload: SendMediaRequest):
        message = media_message(
            payload.type,
            payload.media_url or "",
            caption=payload.caption,
            file_name=payload.file_name,
            mimetype=payload.mimetype,
            ptt=payload.ptt,
            gif_playback=payload.gif_playback,
        )
        response = await dispatcher.send(payload.phone_id, payload.number or "", message)
        return {"success": True, "message": "Media sent successfully", "response": response}

    @router.post("/send-contact")
    async def send_contact(payload: SendContactRequest):
        contact = payload.contact
        message = ContactCardMessage(
            full_name=(contact.full_name if contact else None) or "",
            phone_number=(contact.phone_number if contact else None) or "",
        )
        response = await dispatcher.send(payload.phone_id, payload.number or "", message)
        return {"success": True, "message": "Contact sent successfully", "response": response}

    @router.post("/send-location")
    async def send_location(payload: SendLocationRequest):
        message = LocationMessage(
            latitude=payload.latitude,
            longitude=payload.longitude,
            name=payload.name,
            address=payload.address,
        )
        response = await dispatcher.send(payload.phone_id, payload.number or "", message)
        return {"success": True, "message": "Location sent successfully", "response": response}

    @router.post("/create-group")
    async def create_group(payload: CreateGroupRequest):
        group = await dispatcher.create_group(
            payload.phone_id, payload.group_name or "", payload.participants
        )
        return {"success": True, "message": "Group created successfully", "group": group}

    @router.post("/group-add-participant")
    async def group_add_participant(payload: GroupParticipantsRequest):
        result = await dispatcher.update_participants(
            payload.phone_id, payload.group_id or "", payload.participants, "add"
        )
        return {"success": True, "message": "Participants added successfully", "result": result}

    @router.post("/group-remove-participant")
    async def group_remove_participant(payload: GroupParticipantsRequest):
        result = await dispatcher.update_participants(
            payload.phone_id, payload.group_id or "", payload.participants, "remove"
        )
        return {"success": True, "message": "Participants removed successfully", "result": result}

    @router.post("/group-set-subject")
    async def group_set_subject(payload: GroupSubjectRequest):
        await dispatcher.set_group_subject(
            payload.phone_id, payload.group_id or "", payload.subject or ""
        )
        return {"success": True, "message": "Group subject updated successfully"}

    @router.post("/group-set-description")
    async def group_set_description(payload: GroupDescriptionRequest):
        await dispatcher.set_group_description(
            payload.phone_id, payload.group_id or "", payload.description
        )
        return {"success": True, "message": "Group description updated successfully"}

    @router.get("/group-info/{group_id}")
    async def group_info(group_id: str, phone_id: Optional[str] = Query(None, alias="phoneId")):
        info = await dispatcher.group_info(_phone_id(phone_id), group_id)
        return {"success": True, "groupInfo": info}

    @router.get("/groups")
    async def groups(phone_id: Optional[str] = Query(None, alias="phoneId")):
        items = await dispatcher.list_groups(_phone_id(phone_id))
        return {"success": True, "groups": items}

    @router.get("/contacts")
    async def contacts_default(phone_id: Optional[str] = Query(None, alias="phoneId")):
        items = await dispatcher.contacts(_phone_id(phone_id))
        return {"success": True, "contacts": items}

    @router.get("/contacts/{phone_id}")
    async def contacts(phone_id: str):
        items = await dispatcher.contacts(_phone_id(phone_id))
        return {"success": True, "contacts": items}

    @router.get("/chats")
    async def chats_default(phone_id: Optional[str] = Query(None, alias="phoneId")):
        items = await dispatcher.chats(_phone_id(phone_id))
        return {"success": True, "chats": items}

    @router.get("/chats/{phone_id}")
    async def chats(phone_id: str):
        items = await dispatcher.chats(_phone_id(phone_id))
        return {"success": True, "chats": items}

    @router.get("/privacy-settings")
    async def privacy_settings(phone_id: Optional[str] = Query(None, alias="phoneId")):
        settings = await dispatcher.privacy_settings(_phone_id(phone_id))
        return {"success": True, "privacySettings": settings}

    @router.post("/privacy-settings")
    async def update_privacy_settings(payload: PrivacySettingsRequest):
        await dispatcher.update_privacy_settings(payload.phone_id, payload.settings or {})
        return {"success": True, "message": "Privacy settings updated successfully"}

    app.include_router(router)

    @app.get("/health")
    async def health():
        try:
            sessions = manager.stats_snapshot()
        except Exception:
            logger.exception("event=health_stats_failed")
            sessions = {status.value: 0 for status in ConnectionStatus}
        return {
            "success": True,
            "message": "WhatsApp Gateway is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": sessions,
        }

    @app.get("/")
    async def index():
        return {
            "success": True,
            "message": SERVICE_NAME,
            "version": VERSION,
            "endpoints": [
                {"method": method, "path": path, "description": description}
                for method, path, description in ENDPOINTS
            ],
        }

    @app.get("/metrics", dependencies=[Depends(authenticate)])
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app", "NO_STORE_HEADERS", "VERSION"]
