from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class StaticOrgCatalog:
    def __init__(self, org_ids: Iterable[str]) -> None:
        self._org_ids = {str(org_id).strip() for org_id in org_ids if str(org_id).strip()}

    async def is_valid_org(self, org_id: str) -> bool:
        return org_id.strip() in self._org_ids


class JsonOrgCatalog:
    """
    Organization ids read from the geography document.

    Accepts a flat ``orgs`` list and the ``orgsByUnitUzKey`` mapping of
    ``"<region>|<unit>"`` to organization lists. The file is re-read when
    its modification time changes.
    """

    def __init__(self, file_path: str) -> None:
        self._path = Path(file_path)
        self._org_ids: frozenset[str] = frozenset()
        self._loaded_mtime: float | None = None
        self._lock = asyncio.Lock()

    async def is_valid_org(self, org_id: str) -> bool:
        org_ids = await self._current_ids()
        return org_id.strip() in org_ids

    async def org_ids(self) -> frozenset[str]:
        return await self._current_ids()

    async def _current_ids(self) -> frozenset[str]:
        mtime = await asyncio.to_thread(self._mtime_sync)
        if mtime is None:
            if self._loaded_mtime is None:
                log.warning("Org catalog file missing path=%s", self._path)
            return self._org_ids
        if mtime == self._loaded_mtime:
            return self._org_ids
        async with self._lock:
            # another caller may have reloaded while this one waited
            if mtime != self._loaded_mtime:
                self._org_ids = await asyncio.to_thread(self._load_sync)
                self._loaded_mtime = mtime
                log.info("Org catalog loaded path=%s orgs=%s", self._path, len(self._org_ids))
            return self._org_ids

    def _mtime_sync(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _load_sync(self) -> frozenset[str]:
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            log.exception("Failed to read org catalog path=%s", self._path)
            return self._org_ids
        return frozenset(extract_org_ids(document))


def extract_org_ids(document: Any) -> set[str]:
    out: set[str] = set()
    if not isinstance(document, dict):
        return out
    groups: list[Any] = [document.get("orgs")]
    by_unit = document.get("orgsByUnitUzKey")
    if isinstance(by_unit, dict):
        groups.extend(by_unit.values())
    for group in groups:
        if not isinstance(group, list):
            continue
        for item in group:
            raw = item.get("id") if isinstance(item, dict) else item
            if raw is None:
                continue
            key = str(raw).strip()
            if key:
                out.add(key)
    return out
