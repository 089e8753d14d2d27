"""Command variants for undoable document mutations.

Commands are plain data: they carry everything needed to apply and invert
themselves, and know how to serialize to (and rebuild from) a persisted
record. Applying them to a document is the executor's job.
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .config import COMMAND_SCHEMA_VERSION, ROTATION_STEP
from .models import (
    DividerReference,
    PageEntry,
    PageReference,
    PageSnapshot,
    RedactionMark,
    ResizeTarget,
    SourceFile,
    parse_entries,
)
from .serialization import to_json_safe
from .state import clone_entries, clone_tree, make_divider

if TYPE_CHECKING:
    from .registry import CommandRegistry


class CommandType:
    """Stable type tags written into persisted records."""

    ADD = "AddPages"
    ADD_SOURCE = "AddSource"
    DELETE = "DeletePages"
    DUPLICATE = "DuplicatePages"
    REORDER = "ReorderPages"
    ROTATE = "RotatePages"
    RESIZE = "ResizePages"
    SPLIT = "SplitGroup"
    REMOVE_SOURCE = "RemoveSource"
    REDACT = "AddRedaction"
    UPDATE_REDACTION = "UpdateRedaction"
    DELETE_REDACTION = "DeleteRedaction"
    UPDATE_OUTLINE = "UpdateOutline"
    BATCH = "Batch"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def _plural(count: int, one: str, many: str) -> str:
    return one if count == 1 else many.format(n=count)


def _source_ids_of(entries: Iterable[PageEntry]) -> set[str]:
    return {e.source_file_id for e in entries if isinstance(e, PageReference)}


class Command:
    """Base class for all commands.

    Subclasses set ``type``, build ``name`` in ``__init__``, and implement
    :meth:`payload` and :meth:`from_serialized`.
    """

    type = ""

    def __init__(self, id: Optional[str] = None, created_at: Optional[float] = None):
        self.id = id or new_id()
        self.created_at = created_at if created_at is not None else now_ms()
        self.name = self.type

    @property
    def label(self) -> str:
        return self.name

    def payload(self) -> dict[str, Any]:
        raise NotImplementedError

    def serialize(self) -> dict[str, Any]:
        """Return a detached, JSON-safe record. Raises JsonSafetyError."""
        return to_json_safe(
            {
                "version": COMMAND_SCHEMA_VERSION,
                "type": self.type,
                "payload": {"id": self.id, **self.payload()},
                "timestamp": self.created_at,
            }
        )

    @classmethod
    def from_serialized(cls, record: dict[str, Any], registry: "CommandRegistry") -> "Command":
        raise NotImplementedError

    def referenced_source_ids(self) -> set[str]:
        """Content blob ids this command needs to stay applicable."""
        return set()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.name!r}>"


class AddPagesCommand(Command):
    """Append pages from a source, registering the source when asked to."""

    type = CommandType.ADD

    def __init__(
        self,
        source_file: SourceFile,
        pages: list[PageReference],
        should_add_source: bool = True,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if source_file is None or not source_file.id:
            raise ValueError("AddPagesCommand requires a valid source file")
        if not pages:
            raise ValueError("AddPagesCommand requires at least one page")
        self.source_file = source_file.model_copy(deep=True)
        self.pages = clone_entries(pages)
        self.should_add_source = should_add_source
        self.added_source: Optional[bool] = None  # set by the executor
        if should_add_source:
            self.name = f'Import "{source_file.filename}"'
        else:
            self.name = f'Add pages from "{source_file.filename}"'

    def payload(self) -> dict[str, Any]:
        return {
            "sourceFile": self.source_file.dump(),
            "pages": [p.dump() for p in self.pages],
            "shouldAddSource": self.should_add_source,
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            SourceFile.model_validate(payload["sourceFile"]),
            [PageReference.model_validate(p) for p in payload["pages"]],
            payload.get("shouldAddSource", True),
            id=payload["id"],
            created_at=record["timestamp"],
        )

    def referenced_source_ids(self) -> set[str]:
        return {self.source_file.id} | _source_ids_of(self.pages)


class AddSourceCommand(Command):
    """Register a source file without inserting any pages."""

    type = CommandType.ADD_SOURCE

    def __init__(self, source_file: SourceFile, id: Optional[str] = None, created_at: Optional[float] = None):
        super().__init__(id, created_at)
        if source_file is None or not source_file.id:
            raise ValueError("AddSourceCommand requires a valid source file")
        self.source_file = source_file.model_copy(deep=True)
        self.added_source: Optional[bool] = None  # set by the executor
        self.name = f'Add source "{source_file.filename}"'

    def payload(self) -> dict[str, Any]:
        return {"sourceFile": self.source_file.dump()}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            SourceFile.model_validate(payload["sourceFile"]),
            id=payload["id"],
            created_at=record["timestamp"],
        )

    def referenced_source_ids(self) -> set[str]:
        return {self.source_file.id}


class DeletePagesCommand(Command):
    """Delete pages; snapshots are captured on first execute and reused."""

    type = CommandType.DELETE

    def __init__(
        self,
        page_ids: list[str],
        id: Optional[str] = None,
        backup_snapshots: Optional[list[PageSnapshot]] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not page_ids:
            raise ValueError("DeletePagesCommand requires at least one page id")
        self.page_ids = list(page_ids)
        self.backup_snapshots: list[PageSnapshot] = [s.model_copy(deep=True) for s in backup_snapshots or []]
        self.name = _plural(len(page_ids), "Delete page", "Delete {n} pages")

    def payload(self) -> dict[str, Any]:
        return {
            "pageIds": list(self.page_ids),
            "backupSnapshots": [s.dump() for s in self.backup_snapshots],
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["pageIds"],
            id=payload["id"],
            backup_snapshots=[PageSnapshot.model_validate(s) for s in payload.get("backupSnapshots", [])],
            created_at=record["timestamp"],
        )

    def referenced_source_ids(self) -> set[str]:
        return _source_ids_of(s.page for s in self.backup_snapshots)


class DuplicatePagesCommand(Command):
    """Insert a copy of each page right after it.

    The ids generated on first execute are kept so redo recreates the very
    same pages.
    """

    type = CommandType.DUPLICATE

    def __init__(
        self,
        source_page_ids: list[str],
        id: Optional[str] = None,
        created_page_ids: Optional[list[str]] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not source_page_ids:
            raise ValueError("DuplicatePagesCommand requires at least one source page id")
        self.source_page_ids = list(source_page_ids)
        self.created_page_ids = list(created_page_ids or [])
        self.name = _plural(len(source_page_ids), "Duplicate page", "Duplicate {n} pages")

    def payload(self) -> dict[str, Any]:
        return {
            "sourcePageIds": list(self.source_page_ids),
            "createdPageIds": list(self.created_page_ids),
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["sourcePageIds"],
            id=payload["id"],
            created_page_ids=payload.get("createdPageIds", []),
            created_at=record["timestamp"],
        )


class ReorderPagesCommand(Command):
    type = CommandType.REORDER

    def __init__(
        self,
        previous_order: list[PageEntry],
        new_order: list[PageEntry],
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not previous_order:
            raise ValueError("ReorderPagesCommand requires previous_order")
        if not new_order:
            raise ValueError("ReorderPagesCommand requires new_order")
        if len(previous_order) != len(new_order):
            raise ValueError("ReorderPagesCommand: previous_order and new_order must have same length")
        self.previous_order = clone_entries(previous_order)
        self.new_order = clone_entries(new_order)
        self.name = "Reorder pages"

    def payload(self) -> dict[str, Any]:
        return {
            "previousOrder": [e.dump() for e in self.previous_order],
            "newOrder": [e.dump() for e in self.new_order],
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            parse_entries(payload["previousOrder"]),
            parse_entries(payload["newOrder"]),
            id=payload["id"],
            created_at=record["timestamp"],
        )

    def referenced_source_ids(self) -> set[str]:
        return _source_ids_of(self.previous_order) | _source_ids_of(self.new_order)


class RotatePagesCommand(Command):
    """Rotate pages by a delta; the inverse is the negated delta."""

    type = CommandType.ROTATE

    def __init__(
        self,
        page_ids: list[str],
        degrees: int,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not page_ids:
            raise ValueError("RotatePagesCommand requires at least one page id")
        if isinstance(degrees, bool) or not isinstance(degrees, int):
            raise ValueError("Rotation degrees must be an integer")
        if degrees % ROTATION_STEP != 0 or degrees % 360 == 0:
            raise ValueError(f"Rotation degrees must be a non-zero multiple of {ROTATION_STEP}")
        self.page_ids = list(page_ids)
        self.degrees = degrees
        direction = "right" if degrees > 0 else "left"
        self.name = _plural(len(page_ids), f"Rotate {direction} page", f"Rotate {direction} {{n}} pages")

    def payload(self) -> dict[str, Any]:
        return {"pageIds": list(self.page_ids), "degrees": self.degrees}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(payload["pageIds"], payload["degrees"], id=payload["id"], created_at=record["timestamp"])


class ResizePagesCommand(Command):
    """Set target page dimensions; previous values are captured once."""

    type = CommandType.RESIZE

    def __init__(
        self,
        targets: list[ResizeTarget],
        id: Optional[str] = None,
        previous_targets: Optional[list[ResizeTarget]] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not targets:
            raise ValueError("ResizePagesCommand requires at least one target")
        self.targets = [t.model_copy(deep=True) for t in targets]
        self.previous_targets = [t.model_copy(deep=True) for t in previous_targets or []]
        self.name = _plural(len(self.targets), "Resize page", "Resize {n} pages")

    def payload(self) -> dict[str, Any]:
        return {
            "targets": [t.dump() for t in self.targets],
            "previousTargets": [t.dump() for t in self.previous_targets],
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            [ResizeTarget.model_validate(t) for t in payload["targets"]],
            id=payload["id"],
            previous_targets=[ResizeTarget.model_validate(t) for t in payload.get("previousTargets", [])],
            created_at=record["timestamp"],
        )


class SplitGroupCommand(Command):
    """Insert a divider marking a document boundary at ``index``."""

    type = CommandType.SPLIT

    def __init__(
        self,
        index: int,
        id: Optional[str] = None,
        divider: Optional[DividerReference] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValueError("SplitGroupCommand requires a valid index")
        self.index = index
        self.divider = divider.model_copy() if divider else make_divider(new_id())
        self.name = "Split document"

    def payload(self) -> dict[str, Any]:
        return {"index": self.index, "divider": self.divider.dump()}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["index"],
            id=payload["id"],
            divider=DividerReference.model_validate(payload["divider"]),
            created_at=record["timestamp"],
        )


class RemoveSourceCommand(Command):
    """Remove a source and every page drawn from it.

    Page snapshots (with their indices) are captured on first execute. The
    blob itself is left alone; storage GC reclaims it once unreachable.
    """

    type = CommandType.REMOVE_SOURCE

    def __init__(
        self,
        source_file: SourceFile,
        id: Optional[str] = None,
        page_snapshots: Optional[list[PageSnapshot]] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if source_file is None or not source_file.id:
            raise ValueError("RemoveSourceCommand requires a valid source file")
        self.source_file = source_file.model_copy(deep=True)
        self.page_snapshots: list[PageSnapshot] = [s.model_copy(deep=True) for s in page_snapshots or []]
        self.captured = bool(self.page_snapshots)
        self.name = f'Remove "{source_file.filename}"'

    def payload(self) -> dict[str, Any]:
        return {
            "sourceFile": self.source_file.dump(),
            "pageSnapshots": [s.dump() for s in self.page_snapshots],
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            SourceFile.model_validate(payload["sourceFile"]),
            id=payload["id"],
            page_snapshots=[PageSnapshot.model_validate(s) for s in payload.get("pageSnapshots", [])],
            created_at=record["timestamp"],
        )

    def referenced_source_ids(self) -> set[str]:
        return {self.source_file.id} | _source_ids_of(s.page for s in self.page_snapshots)


class AddRedactionCommand(Command):
    type = CommandType.REDACT

    def __init__(
        self,
        page_id: str,
        redactions: list[RedactionMark],
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not page_id:
            raise ValueError("AddRedactionCommand requires a page id")
        if not redactions:
            raise ValueError("AddRedactionCommand requires at least one redaction")
        self.page_id = page_id
        self.redactions = [r.model_copy() for r in redactions]
        self.name = _plural(len(self.redactions), "Add redaction", "Add {n} redactions")

    def payload(self) -> dict[str, Any]:
        return {"pageId": self.page_id, "redactions": [r.dump() for r in self.redactions]}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["pageId"],
            [RedactionMark.model_validate(r) for r in payload["redactions"]],
            id=payload["id"],
            created_at=record["timestamp"],
        )


class UpdateRedactionCommand(Command):
    type = CommandType.UPDATE_REDACTION

    def __init__(
        self,
        page_id: str,
        before: RedactionMark,
        after: RedactionMark,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not page_id:
            raise ValueError("UpdateRedactionCommand requires a page id")
        if before is None or after is None or not before.id or not after.id:
            raise ValueError("UpdateRedactionCommand requires valid redactions")
        self.page_id = page_id
        self.before = before.model_copy()
        self.after = after.model_copy()
        self.name = "Update redaction"

    def payload(self) -> dict[str, Any]:
        return {"pageId": self.page_id, "previous": self.before.dump(), "next": self.after.dump()}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["pageId"],
            RedactionMark.model_validate(payload["previous"]),
            RedactionMark.model_validate(payload["next"]),
            id=payload["id"],
            created_at=record["timestamp"],
        )


class DeleteRedactionCommand(Command):
    type = CommandType.DELETE_REDACTION

    def __init__(
        self,
        page_id: str,
        redaction: RedactionMark,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        if not page_id:
            raise ValueError("DeleteRedactionCommand requires a page id")
        if redaction is None or not redaction.id:
            raise ValueError("DeleteRedactionCommand requires a redaction")
        self.page_id = page_id
        self.redaction = redaction.model_copy()
        self.name = "Delete redaction"

    def payload(self) -> dict[str, Any]:
        return {"pageId": self.page_id, "redaction": self.redaction.dump()}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["pageId"],
            RedactionMark.model_validate(payload["redaction"]),
            id=payload["id"],
            created_at=record["timestamp"],
        )


class UpdateOutlineCommand(Command):
    """Swap the whole outline tree; trees are kept as plain records."""

    type = CommandType.UPDATE_OUTLINE

    def __init__(
        self,
        previous_tree: list[dict[str, Any]],
        next_tree: list[dict[str, Any]],
        previous_dirty: bool,
        next_dirty: bool,
        name: str,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        self.previous_tree = clone_tree(previous_tree or [])
        self.next_tree = clone_tree(next_tree or [])
        self.previous_dirty = previous_dirty
        self.next_dirty = next_dirty
        self.name = name or "Edit outline"

    def payload(self) -> dict[str, Any]:
        return {
            "previousTree": self.previous_tree,
            "nextTree": self.next_tree,
            "previousDirty": self.previous_dirty,
            "nextDirty": self.next_dirty,
            "name": self.name,
        }

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        return cls(
            payload["previousTree"],
            payload["nextTree"],
            payload["previousDirty"],
            payload["nextDirty"],
            payload["name"],
            id=payload["id"],
            created_at=record["timestamp"],
        )


class BatchCommand(Command):
    """Composite of child commands applied as one history entry.

    Children run in order on execute and in reverse order on undo.
    """

    type = CommandType.BATCH

    def __init__(
        self,
        commands: list[Command],
        name: Optional[str] = None,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ):
        super().__init__(id, created_at)
        self.children = list(commands)
        self.name = name or f"Batch ({len(self.children)})"

    def payload(self) -> dict[str, Any]:
        return {"name": self.name, "commands": [c.serialize() for c in self.children]}

    @classmethod
    def from_serialized(cls, record, registry):
        payload = record["payload"]
        children = []
        for child in payload["commands"]:
            command = registry.deserialize(child)
            if command is not None:
                children.append(command)
        return cls(children, payload.get("name"), id=payload["id"], created_at=record["timestamp"])

    def referenced_source_ids(self) -> set[str]:
        ids: set[str] = set()
        for child in self.children:
            ids |= child.referenced_source_ids()
        return ids


ALL_COMMANDS: tuple[type[Command], ...] = (
    AddPagesCommand,
    AddSourceCommand,
    DeletePagesCommand,
    DuplicatePagesCommand,
    ReorderPagesCommand,
    RotatePagesCommand,
    ResizePagesCommand,
    SplitGroupCommand,
    RemoveSourceCommand,
    AddRedactionCommand,
    UpdateRedactionCommand,
    DeleteRedactionCommand,
    UpdateOutlineCommand,
    BatchCommand,
)
