from __future__ import annotations

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from wagateway.api import create_app
from wagateway.auth import MISSING_CREDENTIALS
from wagateway.events import ConnectionOpened, PairingCodeReady


API_KEY = "test-gateway-key"
JWT_SECRET = "test-jwt-secret-with-enough-length-0001"
AUTH = {"x-api-key": API_KEY}
NUMBER = "6281234567890"


@pytest.fixture
def gateway(monkeypatch: pytest.MonkeyPatch, tmp_path, factory):
    monkeypatch.setenv("API_KEY", API_KEY)
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("AUTH_DIR", str(tmp_path / "auth"))
    monkeypatch.setenv("PAIRING_CODE_WAIT", "0.3")
    monkeypatch.setenv("RECONNECT_DELAY", "0.05")
    monkeypatch.setenv("SHUTDOWN_TIMEOUT", "1")
    monkeypatch.delenv("DEFAULT_PHONE_NUMBER", raising=False)
    monkeypatch.delenv("GATEWAY_ENV", raising=False)
    monkeypatch.setattr("wagateway.api.BridgeClientFactory", lambda *args, **kwargs: factory)
    app = create_app()
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client, factory, app


def _connect(client: TestClient, phone_id: str = "default") -> None:
    response = client.post(
        "/api/connect", json={"phoneNumber": NUMBER, "phoneId": phone_id}, headers=AUTH
    )
    assert response.status_code == 200


def _token(**claims) -> str:
    payload = {"sub": "tester", "exp": int(time.time()) + 60}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def test_health_is_public(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["message"] == "WhatsApp Gateway is running"
    assert payload["sessions"]["open"] == 0


def test_index_lists_endpoints(gateway) -> None:
    client, _, _ = gateway
    payload = client.get("/").json()
    assert payload["version"] == "2.0.0"
    paths = {(item["method"], item["path"]) for item in payload["endpoints"]}
    assert ("POST", "/api/connect") in paths
    assert ("GET", "/api/status/{phoneId}") in paths


def test_missing_credentials(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/status")
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": MISSING_CREDENTIALS}


def test_wrong_api_key(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/status", headers={"x-api-key": "nope"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid API key"


def test_api_key_query_parameter(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/status", params={"api_key": API_KEY})
    assert response.status_code == 200


def test_bearer_token(gateway) -> None:
    client, _, _ = gateway
    ok = client.get("/api/status", headers={"Authorization": f"Bearer {_token()}"})
    assert ok.status_code == 200

    expired = client.get(
        "/api/status",
        headers={"Authorization": f"Bearer {_token(exp=int(time.time()) - 30)}"},
    )
    assert expired.status_code == 403
    assert expired.json()["message"] == "Invalid or expired token"

    forged = jwt.encode({"sub": "tester"}, "another-secret-with-enough-length-0002", algorithm="HS256")
    rejected = client.get(
        "/api/status", headers={"Authorization": f"Bearer {forged}", **AUTH}
    )
    assert rejected.status_code == 403


def test_status_for_unknown_account(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/status/nobody", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "phoneId": "nobody",
        "status": "idle",
        "connected": False,
    }
    assert response.headers["Cache-Control"].startswith("no-store")


def test_status_rejects_bad_account_id(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/status/bad$id", headers=AUTH)
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_connect_validates_phone_number(gateway) -> None:
    client, factory, _ = gateway
    response = client.post("/api/connect", json={"phoneNumber": "123"}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid phone number format")
    assert factory.clients == []

    missing = client.post("/api/connect", json={}, headers=AUTH)
    assert missing.status_code == 400
    assert missing.json() == {"success": False, "message": "Phone number is required"}


def test_connect_and_open(gateway, poll_until) -> None:
    client, factory, _ = gateway
    factory.initial_events = [ConnectionOpened(user={"id": f"{NUMBER}:1@s.whatsapp.net"})]

    response = client.post(
        "/api/connect", json={"phoneNumber": "+62 812-3456-7890", "phoneId": "sales"}, headers=AUTH
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Connection initiated"
    assert response.json()["phoneId"] == "sales"

    poll_until(lambda: client.get("/api/status/sales", headers=AUTH).json()["connected"])
    payload = client.get("/api/status/sales", headers=AUTH).json()
    assert payload["success"] is True
    assert payload["status"] == "open"
    assert payload["phoneNumber"] == NUMBER
    assert payload["user"] == {"id": f"{NUMBER}:1@s.whatsapp.net"}


def test_pairing_code_slow_then_polled(gateway, poll_until) -> None:
    client, factory, _ = gateway
    factory.initial_events = [PairingCodeReady()]
    factory.pairing_delay = 1.0

    response = client.post("/api/request-pairing-code", json={"phoneNumber": NUMBER}, headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Pairing code requested, please wait...",
        "phoneId": "default",
    }

    poll_until(lambda: client.get("/api/status", headers=AUTH).json()["pairingCode"] is not None)
    status = client.get("/api/status", headers=AUTH).json()
    assert status["pairingCode"] == "ABCD-1234"
    assert status["pairingCodeSent"] is True

    again = client.post("/api/request-pairing-code", json={"phoneNumber": NUMBER}, headers=AUTH)
    assert again.json()["message"] == "Pairing code requested successfully"
    assert again.json()["pairingCode"] == "ABCD-1234"
    assert len(factory.clients) == 1
    assert factory.clients[0].pairing_requests == [NUMBER]


def test_pairing_code_fast(gateway) -> None:
    client, factory, _ = gateway
    factory.initial_events = [PairingCodeReady()]

    response = client.post(
        "/api/request-pairing-code", json={"phoneNumber": NUMBER, "phoneId": "ops"}, headers=AUTH
    )

    assert response.json()["pairingCode"] == "ABCD-1234"
    assert response.json()["phoneId"] == "ops"


def test_send_to_unknown_account(gateway) -> None:
    client, _, _ = gateway
    response = client.post(
        "/api/send-message",
        json={"phoneId": "ghost", "number": "6289999999999", "message": "hi"},
        headers=AUTH,
    )
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "message": "WhatsApp client for ghost not found. Please connect first.",
    }


def test_send_message(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)

    response = client.post(
        "/api/send-message", json={"number": "6289999999999", "message": "halo"}, headers=AUTH
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["message"] == "Message sent successfully"
    assert payload["response"]["key"]["remoteJid"] == "6289999999999@s.whatsapp.net"
    assert factory.clients[0].sent == [("6289999999999@s.whatsapp.net", {"text": "halo"})]


def test_send_message_requires_fields(gateway) -> None:
    client, _, _ = gateway
    response = client.post("/api/send-message", json={"number": "6289999999999"}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["message"] == "Number and message are required"


def test_send_failure_is_reported(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)
    factory.clients[0].fail_send = RuntimeError("socket closed")

    response = client.post(
        "/api/send-message", json={"number": "6289999999999", "message": "halo"}, headers=AUTH
    )

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Error sending message",
        "error": "socket closed",
    }


def test_location_out_of_range_is_rejected(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)

    response = client.post(
        "/api/send-location",
        json={"number": "6289999999999", "latitude": 95, "longitude": 20},
        headers=AUTH,
    )

    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid coordinates")
    assert factory.clients[0].sent == []


def test_location_in_range(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)

    response = client.post(
        "/api/send-location",
        json={"number": "6289999999999", "latitude": 10, "longitude": 20, "name": "HQ"},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Location sent successfully"
    content = factory.clients[0].sent[0][1]
    assert content == {
        "location": {"degreesLatitude": 10.0, "degreesLongitude": 20.0, "name": "HQ"}
    }


def test_send_media_and_contact(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)

    media = client.post(
        "/api/send-media",
        json={
            "number": "6289999999999",
            "mediaUrl": "https://cdn.example.com/report",
            "type": "document",
        },
        headers=AUTH,
    )
    assert media.status_code == 200
    assert media.json()["message"] == "Media sent successfully"

    bad_type = client.post(
        "/api/send-media",
        json={"number": "6289999999999", "mediaUrl": "https://cdn.example.com/a", "type": "gif"},
        headers=AUTH,
    )
    assert bad_type.status_code == 400
    assert bad_type.json()["message"] == "Invalid media type. Use: image, video, document, or audio"

    contact = client.post(
        "/api/send-contact",
        json={
            "number": "6289999999999",
            "contact": {"fullName": "Budi", "phoneNumber": "+6281111111111"},
        },
        headers=AUTH,
    )
    assert contact.status_code == 200
    assert contact.json()["message"] == "Contact sent successfully"

    sent = factory.clients[0].sent
    assert sent[0][1]["document"] == {"url": "https://cdn.example.com/report"}
    assert sent[0][1]["mimetype"] == "application/pdf"
    assert "BEGIN:VCARD" in sent[1][1]["contacts"]["contacts"][0]["vcard"]


def test_group_routes(gateway) -> None:
    client, factory, _ = gateway
    _connect(client, "team")

    missing = client.post(
        "/api/create-group",
        json={"phoneId": "team", "groupName": "Ops", "participants": []},
        headers=AUTH,
    )
    assert missing.status_code == 400
    assert missing.json()["message"] == "At least one participant is required"

    created = client.post(
        "/api/create-group",
        json={"phoneId": "team", "groupName": "Ops", "participants": ["6281111111111"]},
        headers=AUTH,
    )
    assert created.status_code == 200
    assert created.json()["group"]["subject"] == "Ops"

    added = client.post(
        "/api/group-add-participant",
        json={"phoneId": "team", "groupId": "120363@g.us", "participants": ["6282222222222"]},
        headers=AUTH,
    )
    assert added.json()["message"] == "Participants added successfully"

    subject = client.post(
        "/api/group-set-subject",
        json={"phoneId": "team", "groupId": "120363@g.us", "subject": "Ops 2"},
        headers=AUTH,
    )
    assert subject.json() == {"success": True, "message": "Group subject updated successfully"}

    info = client.get("/api/group-info/120363@g.us", params={"phoneId": "team"}, headers=AUTH)
    assert info.json() == {"success": True, "groupInfo": {"id": "120363@g.us", "subject": "Team"}}

    groups = client.get("/api/groups", params={"phoneId": "team"}, headers=AUTH)
    assert groups.json()["groups"][0]["subject"] == "Team"

    calls = factory.clients[0].calls
    assert ("participants", "120363@g.us", ["6282222222222@s.whatsapp.net"], "add") in calls


def test_contacts_chats_and_privacy(gateway) -> None:
    client, factory, _ = gateway
    _connect(client, "sales")

    contacts = client.get("/api/contacts/sales", headers=AUTH)
    assert contacts.json()["contacts"][0]["name"] == "Budi"
    chats = client.get("/api/chats", params={"phoneId": "sales"}, headers=AUTH)
    assert chats.json()["chats"][0]["unreadCount"] == 2
    missing = client.get("/api/contacts", headers=AUTH)
    assert missing.status_code == 404

    privacy = client.get("/api/privacy-settings", params={"phoneId": "sales"}, headers=AUTH)
    assert privacy.json()["privacySettings"]["last"] == "contacts"

    no_settings = client.post("/api/privacy-settings", json={"phoneId": "sales"}, headers=AUTH)
    assert no_settings.status_code == 400
    assert no_settings.json()["message"] == "Settings object is required"

    updated = client.post(
        "/api/privacy-settings",
        json={"phoneId": "sales", "settings": {"lastSeenPrivacy": "none"}},
        headers=AUTH,
    )
    assert updated.json()["message"] == "Privacy settings updated successfully"
    updates = [call for call in factory.clients[0].calls if call[0] == "privacy_update"]
    assert len(updates) == 6
    assert ("privacy_update", "lastSeenPrivacy", "none") in updates


def test_logout(gateway) -> None:
    client, factory, _ = gateway
    _connect(client)

    response = client.post("/api/logout", json={}, headers=AUTH)
    assert response.status_code == 200
    assert factory.clients[0].logged_out is True

    status = client.get("/api/status", headers=AUTH).json()
    assert status["status"] == "closed"
    assert status["loggedOut"] is True

    again = client.post("/api/logout", headers=AUTH)
    assert again.status_code == 404


def test_unknown_route(gateway) -> None:
    client, _, _ = gateway
    response = client.get("/api/does-not-exist", headers=AUTH)
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Endpoint not found"}


def test_malformed_json(gateway) -> None:
    client, _, _ = gateway
    response = client.post(
        "/api/connect",
        content=b"{not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_unhandled_error_hides_detail(gateway, monkeypatch) -> None:
    client, _, app = gateway

    def _boom(phone_id: str):
        raise RuntimeError("registry exploded")

    monkeypatch.setattr(app.state.connection_manager, "get_status", _boom)
    response = client.get("/api/status", headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Something went wrong!"}


def test_metrics_requires_auth(gateway) -> None:
    client, _, _ = gateway
    assert client.get("/metrics").status_code == 401
    response = client.get("/metrics", headers=AUTH)
    assert response.status_code == 200
    assert "wagateway_sessions" in response.text


def test_shutdown_logs_out_sessions(monkeypatch: pytest.MonkeyPatch, tmp_path, factory) -> None:
    monkeypatch.setenv("API_KEY", API_KEY)
    monkeypatch.setenv("AUTH_DIR", str(tmp_path / "auth"))
    monkeypatch.setenv("DEFAULT_PHONE_NUMBER", NUMBER)
    monkeypatch.setattr("wagateway.api.BridgeClientFactory", lambda *args, **kwargs: factory)

    with TestClient(create_app()) as client:
        status = client.get("/api/status", headers=AUTH).json()
        assert status["phoneNumber"] == NUMBER
        _connect(client, "second")

    assert len(factory.clients) == 2
    assert all(c.logged_out and c.closed for c in factory.clients)
    assert factory.closed is True


def test_connect_failure_hides_detail_outside_development(gateway) -> None:
    client, factory, _ = gateway
    factory.fail_create = RuntimeError("bridge password=hunter2")

    connect = client.post("/api/connect", json={"phoneNumber": NUMBER}, headers=AUTH)
    pairing = client.post("/api/request-pairing-code", json={"phoneNumber": NUMBER}, headers=AUTH)

    assert connect.status_code == 500
    assert connect.json() == {"success": False, "message": "Error connecting to WhatsApp"}
    assert pairing.status_code == 500
    assert pairing.json() == {"success": False, "message": "Error requesting pairing code"}


def test_connect_failure_detail_in_development(
    monkeypatch: pytest.MonkeyPatch, tmp_path, factory
) -> None:
    monkeypatch.setenv("API_KEY", API_KEY)
    monkeypatch.setenv("AUTH_DIR", str(tmp_path / "auth"))
    monkeypatch.setenv("GATEWAY_ENV", "development")
    monkeypatch.delenv("DEFAULT_PHONE_NUMBER", raising=False)
    monkeypatch.setattr("wagateway.api.BridgeClientFactory", lambda *args, **kwargs: factory)
    factory.fail_create = RuntimeError("bridge unreachable")

    with TestClient(create_app()) as client:
        response = client.post("/api/connect", json={"phoneNumber": NUMBER}, headers=AUTH)

    assert response.status_code == 500
    assert response.json()["error"] == "bridge unreachable"
