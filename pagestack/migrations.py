"""Normalize persisted command records into the current schema.

Records written by early builds may lack ``version`` (treated as 1) and use
older payload field names. Normalizers are keyed by ``(type, version)`` and
only fill in what is missing, so current-shape records pass through
untouched. Unknown pairs pass through as-is; the registry decides later
whether the record is usable.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Optional

from .commands import CommandType, new_id
from .config import LEGACY_COMMAND_VERSION

logger = logging.getLogger(__name__)

Normalizer = Callable[[dict[str, Any]], dict[str, Any]]


def _duplicate_pages_v1(payload: dict[str, Any]) -> dict[str, Any]:
    if "sourcePageIds" not in payload and "pageIds" in payload:
        payload["sourcePageIds"] = payload.pop("pageIds")
    payload.setdefault("createdPageIds", [])
    return payload


def _delete_pages_v1(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("backupSnapshots", [])
    return payload


def _resize_pages_v1(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("previousTargets", [])
    return payload


def _add_pages_v1(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("shouldAddSource", True)
    return payload


def _split_group_v1(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("divider", {"id": new_id(), "isDivider": True})
    return payload


DEFAULT_NORMALIZERS: dict[tuple[str, int], Normalizer] = {
    (CommandType.DUPLICATE, 1): _duplicate_pages_v1,
    (CommandType.DELETE, 1): _delete_pages_v1,
    (CommandType.RESIZE, 1): _resize_pages_v1,
    (CommandType.ADD, 1): _add_pages_v1,
    (CommandType.SPLIT, 1): _split_group_v1,
}


class MigrationEngine:
    def __init__(self, normalizers: Optional[dict[tuple[str, int], Normalizer]] = None):
        self.normalizers = dict(DEFAULT_NORMALIZERS if normalizers is None else normalizers)

    def register(self, command_type: str, version: int, normalizer: Normalizer) -> None:
        self.normalizers[(command_type, version)] = normalizer

    def migrate(self, record: dict[str, Any]) -> dict[str, Any]:
        """Return a normalized copy of ``record``; the input is not mutated."""
        migrated = copy.deepcopy(record)

        version = migrated.get("version")
        if isinstance(version, bool) or not isinstance(version, int):
            version = LEGACY_COMMAND_VERSION
        migrated["version"] = version

        if not isinstance(migrated.get("payload"), dict):
            # Nothing to normalize; deserialization reports the problem
            return migrated

        payload = migrated["payload"]
        if not payload.get("id"):
            payload["id"] = new_id()
        migrated.setdefault("timestamp", 0)

        normalizer = self.normalizers.get((migrated.get("type"), version))
        if normalizer is not None:
            migrated["payload"] = normalizer(payload)
            logger.debug("Normalized %s v%d record %s", migrated.get("type"), version, payload["id"])
        return migrated
