"""Reachability-based garbage collection of stored source blobs.

A blob stays alive while any persisted project (or the live session)
references it through its active sources, its current page list, or any
record in its serialized history, undone entries included, since undo must
keep working.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from .models import PageEntry, PageReference, ProjectState, StorageBreakdown
from .storage import ProjectStore, run_blocking

logger = logging.getLogger(__name__)


@dataclass
class GcStateSnapshot:
    """Reachability inputs of the open, possibly unsaved, project."""

    active_source_ids: list[str] = field(default_factory=list)
    pages: list[PageEntry] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)
    # Ids named explicitly by live commands, unioned with the generic scan
    extra_ids: set[str] = field(default_factory=set)


def collect_ids_from_value(value: Any, ids: set[str]) -> None:
    """Deep scan for ``sourceFileId`` keys and ``sourceFile.id`` records."""
    if isinstance(value, list):
        for item in value:
            collect_ids_from_value(item, ids)
        return
    if not isinstance(value, dict):
        return

    source_file_id = value.get("sourceFileId")
    if isinstance(source_file_id, str):
        ids.add(source_file_id)

    source_file = value.get("sourceFile")
    if isinstance(source_file, dict) and isinstance(source_file.get("id"), str):
        ids.add(source_file["id"])

    for child in value.values():
        collect_ids_from_value(child, ids)


def collect_reachable_source_ids(
    active_source_ids: Iterable[str],
    pages: Iterable[PageEntry],
    history: Iterable[dict[str, Any]],
) -> set[str]:
    ids = {sid for sid in active_source_ids if sid}
    for page in pages:
        if isinstance(page, PageReference) and page.source_file_id:
            ids.add(page.source_file_id)
    for record in history:
        collect_ids_from_value(record, ids)
    return ids


def reachable_from_state(state: ProjectState) -> set[str]:
    return collect_reachable_source_ids(state.active_source_ids, state.page_map, state.history)


def collect_keep_ids(states: Iterable[ProjectState], live: Optional[GcStateSnapshot] = None) -> set[str]:
    keep: set[str] = set()
    for state in states:
        keep |= reachable_from_state(state)
    if live is not None:
        keep |= collect_reachable_source_ids(live.active_source_ids, live.pages, live.history)
        keep |= live.extra_ids
    return keep


def resolve_orphan_ids(stored_keys: Iterable[Any], keep_ids: set[str]) -> list[str]:
    return [key for key in (str(k) for k in stored_keys) if key not in keep_ids]


def storage_breakdown(store: ProjectStore) -> StorageBreakdown:
    """Classify stored blob bytes as active, trash-only or unreferenced cache."""
    trashed = {meta.id for meta in store.list_meta() if meta.trashed_at is not None}
    active_ids: set[str] = set()
    trash_ids: set[str] = set()
    for state in store.list_states():
        ids = reachable_from_state(state)
        if state.id in trashed:
            trash_ids |= ids
        else:
            active_ids |= ids

    result = StorageBreakdown()
    for source_id in store.list_source_keys():
        size = store.source_size(source_id)
        if source_id in active_ids:
            result.active_bytes += size
        elif source_id in trash_ids:
            result.trash_bytes += size
        else:
            result.cache_bytes += size
    result.used_bytes = result.active_bytes + result.trash_bytes + result.cache_bytes
    return result


class SourceCollector:
    """Deletes stored blobs no project can reach.

    Overlapping runs are dropped, not queued: the next mutation schedules
    another pass.
    """

    def __init__(self, store: ProjectStore, evict: Optional[Callable[[list[str]], None]] = None):
        self.store = store
        self._evictors: list[Callable[[list[str]], None]] = [evict] if evict else []
        self.running = False

    def add_evictor(self, evict: Callable[[list[str]], None]) -> None:
        self._evictors.append(evict)

    def collect(self, live: Optional[GcStateSnapshot] = None, stored_keys: Optional[list[str]] = None) -> list[str]:
        """One blocking reconciliation pass. Returns the deleted ids.

        Stored keys must be read before any state, so a blob written
        meanwhile is either missing from the keys or already referenced.
        """
        if stored_keys is None:
            stored_keys = self.store.list_source_keys()
        keep = collect_keep_ids(self.store.list_states(), live)
        orphans = resolve_orphan_ids(stored_keys, keep)
        if not orphans:
            return []
        self.store.delete_sources(orphans)
        for evict in self._evictors:
            evict(orphans)
        logger.info("Collected %d orphaned source(s): %s", len(orphans), ", ".join(orphans))
        return orphans

    async def run(self, live_state: Optional[Callable[[], GcStateSnapshot]] = None) -> list[str]:
        if self.running:
            logger.debug("GC already in flight; dropping request")
            return []
        self.running = True
        try:
            stored_keys = await run_blocking(self.store.list_source_keys)
            live = live_state() if live_state is not None else None
            return await run_blocking(self.collect, live, stored_keys)
        except Exception as e:
            logger.warning("Failed to garbage collect stored sources: %s", e)
            return []
        finally:
            self.running = False
