"""HTTP session client talking to the protocol bridge sidecar.

The sidecar owns the wire protocol. This module only forwards commands to it
and turns its long-polled event feed into the closed set of session events.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx

from .client import ClientSpec
from .events import (
    ConnectionClosed,
    ConnectionConnecting,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    HistorySynced,
    MessageReceived,
    PairingCodeReady,
    QRCodeReceived,
    SessionEvent,
)


LOGGER = logging.getLogger("wagateway.bridge")

DEFAULT_TIMEOUT = 15.0
DEFAULT_POLL_WAIT = 25.0


class BridgeError(RuntimeError):
    """The sidecar answered with a non-success status."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


def _disconnect_status(data: dict[str, Any]) -> Optional[int]:
    last = data.get("lastDisconnect")
    if not isinstance(last, dict):
        return None
    error = last.get("error")
    candidates = []
    if isinstance(error, dict):
        output = error.get("output")
        if isinstance(output, dict):
            candidates.append(output.get("statusCode"))
        candidates.append(error.get("statusCode"))
    candidates.append(last.get("statusCode"))
    for candidate in candidates:
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def _disconnect_detail(data: dict[str, Any]) -> Optional[str]:
    last = data.get("lastDisconnect")
    if not isinstance(last, dict):
        return None
    error = last.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    elif isinstance(error, str) and error:
        return error
    return None


def _count(value: Any) -> int:
    if isinstance(value, (list, dict)):
        return len(value)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def decode_event(raw: Any) -> list[SessionEvent]:
    """Translate one bridge event into zero or more session events."""

    if not isinstance(raw, dict):
        LOGGER.debug("event=bridge_event_ignored reason=not_a_mapping")
        return []
    name = raw.get("event") or raw.get("type")
    data = raw.get("data")
    if not isinstance(data, dict):
        data = {}

    if name == "creds.update":
        return [CredentialsUpdated(credentials=data)]

    if name == "connection.update":
        decoded: list[SessionEvent] = []
        connection = data.get("connection")
        qr = data.get("qr")
        if connection == "connecting":
            decoded.append(ConnectionConnecting())
        if qr:
            decoded.append(QRCodeReceived(qr=str(qr)))
        if connection == "connecting" or qr:
            decoded.append(PairingCodeReady())
        if connection == "open":
            user = data.get("user")
            decoded.append(ConnectionOpened(user=user if isinstance(user, dict) else None))
        elif connection == "close":
            decoded.append(
                ConnectionClosed(
                    reason=DisconnectReason.from_status_code(_disconnect_status(data)),
                    detail=_disconnect_detail(data),
                )
            )
        return decoded

    if name == "messaging-history.set":
        return [
            HistorySynced(
                chats=_count(data.get("chats")),
                contacts=_count(data.get("contacts")),
                messages=_count(data.get("messages")),
                is_latest=bool(data.get("isLatest")),
            )
        ]

    if name == "messages.upsert":
        if data.get("type") != "notify":
            return []
        received: list[SessionEvent] = []
        for message in data.get("messages") or []:
            if not isinstance(message, dict):
                continue
            key = message.get("key") if isinstance(message.get("key"), dict) else {}
            received.append(MessageReceived(remote_jid=key.get("remoteJid"), message=message))
        return received

    LOGGER.debug("event=bridge_event_ignored name=%s", name)
    return []


class BridgeSessionClient:
    """One account session hosted by the bridge sidecar."""

    def __init__(
        self,
        spec: ClientSpec,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        token: Optional[str] = None,
        poll_wait: float = DEFAULT_POLL_WAIT,
    ) -> None:
        self._spec = spec
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._poll_wait = poll_wait
        self._cursor: Any = None
        self._closed = False

    @property
    def phone_id(self) -> str:
        return self._spec.phone_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self._token:
            headers["X-Auth-Token"] = self._token
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}/session/{quote(self._spec.phone_id, safe='')}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)
        response = await self._http.request(method, self._url(path), **kwargs)
        if response.status_code >= 400:
            detail = ""
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = str(body.get("error") or body.get("message") or "")
            if not detail:
                detail = response.text[:200]
            raise BridgeError(
                f"bridge {method} {path} failed status={response.status_code} detail={detail}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _field(body: Any, key: str, default: Any = None) -> Any:
        if isinstance(body, dict) and key in body:
            return body[key]
        return body if body is not None else default

    async def start(self) -> None:
        if self._closed:
            raise BridgeError(f"session client for {self._spec.phone_id} is closed")
        payload = {
            "phoneNumber": self._spec.phone_number,
            "pairing": self._spec.pairing,
            "credentials": self._spec.credentials,
            "options": dict(self._spec.options),
        }
        await self._request("POST", "/start", json=payload)
        LOGGER.info(
            "event=bridge_session_started phone_id=%s pairing=%s",
            self._spec.phone_id,
            self._spec.pairing,
        )

    async def events(self) -> AsyncIterator[SessionEvent]:
        while not self._closed:
            params: dict[str, Any] = {"wait": int(self._poll_wait)}
            if self._cursor is not None:
                params["after"] = self._cursor
            try:
                body = await self._request(
                    "GET", "/events", params=params, timeout=self._poll_wait + 10.0
                )
            except (httpx.HTTPError, BridgeError) as exc:
                if self._closed:
                    return
                LOGGER.warning(
                    "event=bridge_poll_failed phone_id=%s error=%s", self._spec.phone_id, exc
                )
                yield ConnectionClosed(DisconnectReason.CONNECTION_LOST, str(exc))
                return
            if not isinstance(body, dict):
                continue
            if body.get("cursor") is not None:
                self._cursor = body["cursor"]
            for raw in body.get("events") or []:
                for event in decode_event(raw):
                    yield event

    async def request_pairing_code(self, phone_number: str) -> str:
        body = await self._request("POST", "/pairing-code", json={"phoneNumber": phone_number})
        code = None
        if isinstance(body, dict):
            code = body.get("code") or body.get("pairingCode")
        elif isinstance(body, str):
            code = body
        if not code:
            raise BridgeError("bridge returned no pairing code")
        return str(code)

    async def send_message(self, jid: str, content: dict[str, Any]) -> Any:
        return await self._request("POST", "/send", json={"jid": jid, "content": content})

    async def refresh_contacts(self) -> Any:
        body = await self._request("POST", "/contacts/refresh")
        return self._field(body, "contacts", [])

    async def get_contacts(self) -> list[dict[str, Any]]:
        return self._field(await self._request("GET", "/contacts"), "contacts", [])

    async def get_chats(self) -> list[dict[str, Any]]:
        return self._field(await self._request("GET", "/chats"), "chats", [])

    async def group_create(self, subject: str, participants: list[str]) -> Any:
        return await self._request(
            "POST", "/groups", json={"subject": subject, "participants": participants}
        )

    async def group_participants_update(
        self, group_id: str, participants: list[str], action: str
    ) -> Any:
        return await self._request(
            "POST",
            f"/groups/{quote(group_id, safe='')}/participants",
            json={"participants": participants, "action": action},
        )

    async def group_update_subject(self, group_id: str, subject: str) -> Any:
        return await self._request(
            "POST", f"/groups/{quote(group_id, safe='')}/subject", json={"subject": subject}
        )

    async def group_update_description(self, group_id: str, description: Optional[str]) -> Any:
        return await self._request(
            "POST",
            f"/groups/{quote(group_id, safe='')}/description",
            json={"description": description},
        )

    async def group_metadata(self, group_id: str) -> Any:
        return await self._request("GET", f"/groups/{quote(group_id, safe='')}")

    async def list_groups(self) -> list[dict[str, Any]]:
        return self._field(await self._request("GET", "/groups"), "groups", [])

    async def fetch_privacy_settings(self) -> Any:
        return await self._request("GET", "/privacy")

    async def update_privacy_setting(self, name: str, value: str) -> Any:
        return await self._request("POST", "/privacy", json={"name": name, "value": value})

    async def logout(self) -> None:
        await self._request("POST", "/logout")
        LOGGER.info("event=bridge_logged_out phone_id=%s", self._spec.phone_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._request("POST", "/stop")
        except (httpx.HTTPError, BridgeError) as exc:
            LOGGER.warning(
                "event=bridge_stop_failed phone_id=%s error=%s", self._spec.phone_id, exc
            )


class BridgeClientFactory:
    """Builds :class:`BridgeSessionClient` objects sharing one HTTP pool."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        poll_wait: float = DEFAULT_POLL_WAIT,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._poll_wait = poll_wait
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    def __call__(self, spec: ClientSpec) -> BridgeSessionClient:
        return BridgeSessionClient(
            spec,
            self._http,
            base_url=self._base_url,
            token=self._token,
            poll_wait=self._poll_wait,
        )

    async def aclose(self) -> None:
        if not self._http.is_closed:
            await self._http.aclose()


__all__ = [
    "BridgeError",
    "BridgeSessionClient",
    "BridgeClientFactory",
    "decode_event",
]
