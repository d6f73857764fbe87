from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import wagateway.api as gateway_api
from wagateway.registry import ConnectionRecord, ConnectionStatus


class StubConnectionManager:
    def __init__(self) -> None:
        self.stats: Dict[str, int] = {status.value: 0 for status in ConnectionStatus}
        self.raise_stats = False
        self.records: Dict[str, ConnectionRecord] = {}
        self.started_with: list[Optional[str]] = []
        self.shutdown_calls = 0

    async def start(self, *, default_phone_number: Optional[str] = None) -> None:
        self.started_with.append(default_phone_number)

    async def shutdown(self) -> None:
        self.shutdown_calls += 1

    def stats_snapshot(self) -> Dict[str, int]:
        if self.raise_stats:
            raise RuntimeError("stats error")
        return dict(self.stats)

    def get_status(self, phone_id: str) -> Optional[ConnectionRecord]:
        return self.records.get(phone_id)


@pytest.fixture
def gateway_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("API_KEY", "stub-key")
    monkeypatch.setenv("AUTH_DIR", str(tmp_path / "auth"))
    monkeypatch.delenv("DEFAULT_PHONE_NUMBER", raising=False)
    stub = StubConnectionManager()
    monkeypatch.setattr(gateway_api, "ConnectionManager", lambda *args, **kwargs: stub)
    app = gateway_api.create_app()
    with TestClient(app) as client:
        yield client, stub
