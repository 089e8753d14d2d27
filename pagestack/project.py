"""Projects: one editing session per open project, and the workspace that owns them."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, Optional

from .autosave import AutosaveService
from .commands import (
    AddPagesCommand,
    AddRedactionCommand,
    AddSourceCommand,
    Command,
    DeletePagesCommand,
    DeleteRedactionCommand,
    DuplicatePagesCommand,
    RemoveSourceCommand,
    ReorderPagesCommand,
    ResizePagesCommand,
    RotatePagesCommand,
    SplitGroupCommand,
    UpdateOutlineCommand,
    UpdateRedactionCommand,
    now_ms,
)
from .config import DEFAULT_PROJECT_TITLE, DEFAULT_RENDER_SCALE, SESSION_SAVE_DEBOUNCE_S
from .document import DocumentLoader, read_pdf
from .executor import Executor
from .history import HistoryManager
from .models import (
    PageReference,
    ProjectMeta,
    ProjectResponse,
    ProjectState,
    RedactionMark,
    ResizeTarget,
    SourceFile,
    StorageBreakdown,
)
from .registry import CommandRegistry, build_default_registry
from .state import DocumentState, clone_entries, clone_tree
from .storage import ProjectStore, run_blocking, validate_id
from .storage_gc import GcStateSnapshot, SourceCollector, storage_breakdown

logger = logging.getLogger(__name__)


def normalize_title(title: Optional[str]) -> str:
    title = (title or "").strip()
    return title or DEFAULT_PROJECT_TITLE


class ProjectSession:
    """Document, history and autosave wiring for one open project."""

    def __init__(self, meta: ProjectMeta, store: ProjectStore, registry: CommandRegistry):
        self.meta = meta
        self.store = store
        self.state = DocumentState()
        self.history = HistoryManager(Executor(self.state), registry)
        self.autosave: Optional[AutosaveService] = None
        self._unsubscribe = None
        # Blobs written to the store whose commands have not run yet
        self.pending_source_ids: set[str] = set()
        self.discarded = False
        self._write_lock = threading.Lock()

    @property
    def id(self) -> str:
        return self.meta.id

    # -- Autosave --

    def enable_autosave(self, collect_garbage, live_gc_state, debounce_s: float = SESSION_SAVE_DEBOUNCE_S) -> None:
        self.autosave = AutosaveService(
            can_persist=lambda: bool(self.meta.id),
            persist=self.save_async,
            collect_garbage=collect_garbage,
            live_gc_state=live_gc_state,
            debounce_s=debounce_s,
        )
        self._unsubscribe = self.history.subscribe(self.autosave.notify)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.autosave is not None:
            self.autosave.stop()
            self.autosave = None

    def discard(self) -> None:
        """Block further saves. Waits for a write already in progress."""
        with self._write_lock:
            self.discarded = True

    # -- Persistence --

    def to_project_state(self) -> ProjectState:
        return ProjectState(
            id=self.meta.id,
            active_source_ids=self.state.active_source_ids(),
            page_map=clone_entries(self.state.pages),
            history=self.history.serialize(),
            history_pointer=self.history.pointer,
            updated_at=now_ms(),
            outline_tree=clone_tree(self.state.outline_tree),
            outline_dirty=self.state.outline_dirty,
            metadata=self.state.metadata.model_copy() if self.state.metadata else None,
        )

    def _write(self, record: ProjectState) -> None:
        with self._write_lock:
            if self.discarded:
                logger.debug("Project %s was deleted; dropping save", record.id)
                return
            self.store.put_state(record)
            self.meta.updated_at = record.updated_at
            self.store.put_meta(self.meta)
        logger.debug("Saved project %s (%d pages, pointer %d)", record.id, len(record.page_map), record.history_pointer)

    def save(self) -> ProjectState:
        record = self.to_project_state()
        self._write(record)
        return record

    async def save_async(self) -> None:
        # Snapshot on the loop thread; only the disk write is offloaded
        record = self.to_project_state()
        await run_blocking(self._write, record)

    def restore(self, record: ProjectState) -> None:
        """Load a persisted project into this session, then rehydrate history."""
        self.state.reset()
        for source_id in record.active_source_ids:
            source = self.store.get_source(source_id)
            if source is None:
                logger.warning("Project %s references missing source %s", record.id, source_id)
                continue
            self.state.add_source_file(source)
        self.state.pages = clone_entries(record.page_map)
        self.state.outline_tree = clone_tree(record.outline_tree)
        self.state.outline_dirty = record.outline_dirty
        self.state.metadata = record.metadata
        self.history.rehydrate(record.history, record.history_pointer, record.updated_at or None)

    def gc_snapshot(self) -> GcStateSnapshot:
        extra = set(self.pending_source_ids)
        for entry in self.history.entries:
            extra |= entry.command.referenced_source_ids()
        return GcStateSnapshot(
            active_source_ids=self.state.active_source_ids(),
            pages=clone_entries(self.state.pages),
            history=self.history.serialize(),
            extra_ids=extra,
        )

    def describe(self) -> ProjectResponse:
        return ProjectResponse(
            meta=self.meta,
            sources=list(self.state.sources.values()),
            pages=list(self.state.pages),
            outline_tree=clone_tree(self.state.outline_tree),
            history=self.history.describe(),
        )

    # -- Lookups --

    def _require_pages(self, page_ids: list[str]) -> list[PageReference]:
        if not page_ids:
            raise ValueError("No page ids given")
        pages = []
        for page_id in page_ids:
            page = self.state.find_page(page_id)
            if page is None:
                raise KeyError(f"Page {page_id} not found")
            pages.append(page)
        return pages

    def _require_source(self, source_id: str) -> SourceFile:
        source = self.state.sources.get(source_id)
        if source is None:
            raise KeyError(f"Source {source_id} not found")
        return source

    def _require_redaction(self, page_id: str, redaction_id: str) -> RedactionMark:
        page = self._require_pages([page_id])[0]
        for mark in page.redactions:
            if mark.id == redaction_id:
                return mark
        raise KeyError(f"Redaction {redaction_id} not found on page {page_id}")

    # -- Edits --

    def load_pdf(self, content: bytes, filename: str) -> tuple[SourceFile, list[PageReference]]:
        """Decode a PDF and store its blob. Blocking; the commands run in :meth:`add_source_pages`."""
        source, pages = read_pdf(content, filename, color_index=len(self.state.sources))
        self.pending_source_ids.add(source.id)
        self.store.put_source(source, content)
        return source, pages

    def add_source_pages(self, source: SourceFile, pages: list[PageReference]) -> Optional[Command]:
        try:
            return self.history.execute_batch(
                [AddSourceCommand(source), AddPagesCommand(source, pages, should_add_source=False)],
                label=f'Import "{source.filename}"',
            )
        finally:
            self.pending_source_ids.discard(source.id)

    def import_pdf(self, content: bytes, filename: str) -> tuple[SourceFile, list[PageReference]]:
        source, pages = self.load_pdf(content, filename)
        self.add_source_pages(source, pages)
        return source, pages

    def delete_pages(self, page_ids: list[str]) -> Command:
        self._require_pages(page_ids)
        return self.history.execute(DeletePagesCommand(page_ids))

    def duplicate_pages(self, page_ids: list[str]) -> Command:
        self._require_pages(page_ids)
        return self.history.execute(DuplicatePagesCommand(page_ids))

    def rotate_pages(self, page_ids: list[str], degrees: int) -> Command:
        self._require_pages(page_ids)
        return self.history.execute(RotatePagesCommand(page_ids, degrees))

    def reorder_pages(self, order: list[str]) -> Command:
        current = {entry.id: entry for entry in self.state.pages}
        if len(order) != len(current) or set(order) != set(current):
            raise ValueError("Order must list every page id exactly once")
        new_order = [current[entry_id] for entry_id in order]
        return self.history.execute(ReorderPagesCommand(self.state.pages, new_order))

    def resize_pages(self, targets: list[ResizeTarget]) -> Command:
        self._require_pages([t.page_id for t in targets])
        return self.history.execute(ResizePagesCommand(targets))

    def split_at(self, index: int) -> Command:
        if index < 0 or index > len(self.state.pages):
            raise ValueError(f"Split index {index} out of range")
        return self.history.execute(SplitGroupCommand(index))

    def remove_source(self, source_id: str) -> Command:
        source = self._require_source(source_id)
        return self.history.execute(RemoveSourceCommand(source))

    def add_redactions(self, page_id: str, marks: list[RedactionMark]) -> Command:
        self._require_pages([page_id])
        return self.history.execute(AddRedactionCommand(page_id, marks))

    def update_redaction(self, page_id: str, mark: RedactionMark) -> Command:
        before = self._require_redaction(page_id, mark.id)
        return self.history.execute(UpdateRedactionCommand(page_id, before, mark))

    def delete_redaction(self, page_id: str, redaction_id: str) -> Command:
        mark = self._require_redaction(page_id, redaction_id)
        return self.history.execute(DeleteRedactionCommand(page_id, mark))

    def update_outline(self, tree: list[dict[str, Any]], dirty: bool = True, label: str = "Edit outline") -> Command:
        return self.history.execute(
            UpdateOutlineCommand(self.state.outline_tree, tree, self.state.outline_dirty, dirty, label)
        )


class Workspace:
    """Open sessions over one store, plus project lifecycle and blob GC."""

    def __init__(
        self,
        store: ProjectStore,
        registry: Optional[CommandRegistry] = None,
        autosave: bool = True,
        debounce_s: float = SESSION_SAVE_DEBOUNCE_S,
    ):
        self.store = store
        self.registry = registry or build_default_registry()
        self.loader = DocumentLoader(store.get_source_data)
        self.collector = SourceCollector(store, evict=self.loader.evict)
        self.autosave = autosave
        self.debounce_s = debounce_s
        self.sessions: dict[str, ProjectSession] = {}
        # Request handlers call in from worker threads
        self._lock = threading.RLock()

    def _attach(self, session: ProjectSession) -> ProjectSession:
        if self.autosave:
            session.enable_autosave(self.collect_garbage, self.live_gc_state, self.debounce_s)
        self.sessions[session.id] = session
        return session

    def _require_meta(self, project_id: str) -> ProjectMeta:
        validate_id(project_id)
        meta = self.store.get_meta(project_id)
        if meta is None:
            raise KeyError(f"Project {project_id} not found")
        return meta

    # -- Project lifecycle --

    def create_project(self, title: Optional[str] = None) -> ProjectSession:
        now = now_ms()
        meta = ProjectMeta(id=uuid.uuid4().hex[:16], title=normalize_title(title), created_at=now, updated_at=now)
        session = ProjectSession(meta, self.store, self.registry)
        session.save()
        logger.info("Created project %s (%r)", meta.id, meta.title)
        with self._lock:
            return self._attach(session)

    def open_project(self, project_id: str) -> ProjectSession:
        with self._lock:
            session = self.sessions.get(project_id)
            if session is not None:
                return session
            meta = self._require_meta(project_id)
            session = ProjectSession(meta, self.store, self.registry)
            record = self.store.get_state(project_id)
            if record is not None:
                session.restore(record)
            return self._attach(session)

    def close_project(self, project_id: str, save: bool = True) -> None:
        with self._lock:
            session = self.sessions.pop(project_id, None)
        if session is None:
            return
        session.close()
        if save:
            session.save()
        else:
            session.discard()

    def list_projects(self, include_trashed: bool = False) -> list[ProjectMeta]:
        metas = [m for m in self.store.list_meta() if include_trashed or m.trashed_at is None]
        return sorted(metas, key=lambda m: m.updated_at, reverse=True)

    def rename_project(self, project_id: str, title: str) -> ProjectMeta:
        meta = self._require_meta(project_id)
        meta.title = normalize_title(title)
        meta.updated_at = now_ms()
        self.store.put_meta(meta)
        if project_id in self.sessions:
            self.sessions[project_id].meta = meta
        return meta

    def trash_project(self, project_id: str) -> ProjectMeta:
        with self._lock:
            self.close_project(project_id)
            meta = self._require_meta(project_id)
            meta.trashed_at = now_ms()
            self.store.put_meta(meta)
            return meta

    def restore_project(self, project_id: str) -> ProjectMeta:
        meta = self._require_meta(project_id)
        meta.trashed_at = None
        self.store.put_meta(meta)
        return meta

    def delete_project(self, project_id: str) -> None:
        """Permanently delete a project. Its blobs go with the next GC pass."""
        with self._lock:
            self._require_meta(project_id)
            self.close_project(project_id, save=False)
            self.store.delete_state(project_id)
            self.store.delete_meta(project_id)
        logger.info("Deleted project %s", project_id)

    def empty_trash(self) -> list[str]:
        doomed = [m.id for m in self.store.list_meta() if m.trashed_at is not None]
        for project_id in doomed:
            self.delete_project(project_id)
        return doomed

    # -- Sources and storage --

    def render_page(self, project_id: str, page_id: str, scale: float = DEFAULT_RENDER_SCALE) -> bytes:
        session = self.open_project(project_id)
        page = session.state.find_page(page_id)
        if page is None:
            raise KeyError(f"Page {page_id} not found")
        return self.loader.render_page(page, scale)

    def open_sessions(self) -> list[ProjectSession]:
        with self._lock:
            return list(self.sessions.values())

    def live_gc_state(self) -> GcStateSnapshot:
        merged = GcStateSnapshot()
        for session in self.open_sessions():
            snapshot = session.gc_snapshot()
            merged.active_source_ids.extend(snapshot.active_source_ids)
            merged.pages.extend(snapshot.pages)
            merged.history.extend(snapshot.history)
            merged.extra_ids |= snapshot.extra_ids
        return merged

    async def collect_garbage(self, live_state: Optional[Callable[[], GcStateSnapshot]] = None) -> list[str]:
        return await self.collector.run(live_state or self.live_gc_state)

    def storage_breakdown(self) -> StorageBreakdown:
        return storage_breakdown(self.store)

    async def flush(self) -> None:
        for session in self.open_sessions():
            if session.autosave is not None:
                await session.autosave.flush()

    def shutdown(self) -> None:
        for project_id in [s.id for s in self.open_sessions()]:
            self.close_project(project_id)
        self.loader.clear()
