from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Optional


LOGGER = logging.getLogger("wagateway")

CREDS_FILENAME = "creds.json"


class CredentialStore:
    """Per-account credential files under ``<base_dir>/auth_<phone_id>/``."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, phone_id: str) -> Path:
        return self._base_dir / f"auth_{phone_id}"

    def _ensure_permissions(self, path: Path) -> None:
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            LOGGER.warning(
                "event=credentials_chmod_failed path=%s error=%s",
                path,
                exc,
            )

    def _load_sync(self, phone_id: str) -> Optional[dict[str, Any]]:
        path = self.path_for(phone_id) / CREDS_FILENAME
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            LOGGER.warning("event=credentials_corrupt phone_id=%s path=%s", phone_id, path)
            return None
        return data if isinstance(data, dict) else None

    def _save_sync(self, phone_id: str, credentials: dict[str, Any]) -> Path:
        directory = self.path_for(phone_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / CREDS_FILENAME
        tmp = directory / f".{CREDS_FILENAME}.tmp"
        tmp.write_text(json.dumps(credentials, ensure_ascii=False), encoding="utf-8")
        self._ensure_permissions(tmp)
        os.replace(tmp, target)
        return target

    def _clear_sync(self, phone_id: str) -> bool:
        directory = self.path_for(phone_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True

    def exists(self, phone_id: str) -> bool:
        return (self.path_for(phone_id) / CREDS_FILENAME).exists()

    async def load(self, phone_id: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self._load_sync, phone_id)

    async def save(self, phone_id: str, credentials: dict[str, Any]) -> Path:
        return await asyncio.to_thread(self._save_sync, phone_id, credentials)

    async def clear(self, phone_id: str) -> bool:
        removed = await asyncio.to_thread(self._clear_sync, phone_id)
        LOGGER.info("event=credentials_cleared phone_id=%s removed=%s", phone_id, removed)
        return removed


__all__ = ["CredentialStore", "CREDS_FILENAME"]
