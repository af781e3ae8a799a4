"""
gateway/store.py — Persisted Gateway Configuration

A single JSON document holding the configuration record of every
registered gateway:

    {"version": 1, "savedAt": "...", "gateways": [{id, url, name, token,
     autoDiscovered, createdAt}, ...]}

Runtime fields are never written. Saves go through a temp file + rename so
a crash never leaves a half-written document.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from exceptions import StoreError
from gateway.models import utc_now_iso
from observability.logger import get_logger

log = get_logger(__name__)

STORE_VERSION = 1

_RECORD_FIELDS = ("id", "url", "name", "token", "autoDiscovered", "createdAt")


class GatewayStore:
    """JSON file store for gateway configuration records."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> list[dict[str, Any]]:
        """
        Return the stored records. A missing file is an empty store; an
        unreadable or corrupt file raises StoreError.
        """
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not read {self.path}: {e}") from e

        records = data.get("gateways") if isinstance(data, dict) else None
        if not isinstance(records, list):
            raise StoreError(f"{self.path} has no 'gateways' list")

        valid = [
            r for r in records
            if isinstance(r, dict) and r.get("id") and r.get("url")
        ]
        if len(valid) != len(records):
            log.warning("store.records_skipped", skipped=len(records) - len(valid))
        log.info("store.loaded", path=str(self.path), count=len(valid))
        return valid

    def save(self, records: list[dict[str, Any]]) -> None:
        document = {
            "version": STORE_VERSION,
            "savedAt": utc_now_iso(),
            "gateways": [{k: r.get(k) for k in _RECORD_FIELDS} for r in records],
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Could not write {self.path}: {e}") from e
        log.debug("store.saved", path=str(self.path), count=len(records))
