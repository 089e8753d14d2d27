"""Apply commands forward or backward to a DocumentState.

Dispatch is a table from type tag to handler, so behaviour never depends on
the runtime class a record was rebuilt into.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from .commands import (
    AddPagesCommand,
    AddRedactionCommand,
    AddSourceCommand,
    BatchCommand,
    Command,
    CommandType,
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
    new_id,
)
from .models import PageReference, PageSnapshot, ResizeTarget
from .state import DocumentState, clone_entries, clone_entry

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    EXECUTE = "execute"
    UNDO = "undo"


Handler = Callable[["Executor", Command, Direction], None]


def capture_snapshots(state: DocumentState, predicate) -> list[PageSnapshot]:
    return [
        PageSnapshot(page=entry.model_copy(deep=True), index=index)
        for index, entry in enumerate(state.pages)
        if predicate(entry)
    ]


def restore_snapshots(state: DocumentState, snapshots: list[PageSnapshot]) -> None:
    # Ascending order keeps every original index exact
    for snapshot in sorted(snapshots, key=lambda s: s.index):
        state.insert_pages(snapshot.index, [clone_entry(snapshot.page)])


def _add_pages(ex: "Executor", cmd: AddPagesCommand, direction: Direction) -> None:
    state = ex.state
    if direction is Direction.EXECUTE:
        cmd.added_source = cmd.should_add_source and cmd.source_file.id not in state.sources
        if cmd.added_source:
            state.add_source_file(cmd.source_file.model_copy(deep=True))
        state.add_pages(clone_entries(cmd.pages))
        return

    state.delete_pages(p.id for p in cmd.pages)
    # added_source is unknown (None) for a restored command that was never replayed
    added = cmd.should_add_source if cmd.added_source is None else cmd.added_source
    if added and not state.source_in_use(cmd.source_file.id):
        state.remove_source_only(cmd.source_file.id)


def _add_source(ex: "Executor", cmd: AddSourceCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        cmd.added_source = cmd.source_file.id not in ex.state.sources
        if cmd.added_source:
            ex.state.add_source_file(cmd.source_file.model_copy(deep=True))
        return
    if cmd.added_source is not False:
        ex.state.remove_source_only(cmd.source_file.id)


def _delete_pages(ex: "Executor", cmd: DeletePagesCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        if not cmd.backup_snapshots:
            targets = set(cmd.page_ids)
            cmd.backup_snapshots = capture_snapshots(ex.state, lambda p: p.id in targets)
        ex.state.delete_pages(cmd.page_ids)
        return
    restore_snapshots(ex.state, cmd.backup_snapshots)


def _duplicate_pages(ex: "Executor", cmd: DuplicatePagesCommand, direction: Direction) -> None:
    state = ex.state
    if direction is Direction.UNDO:
        state.delete_pages(cmd.created_page_ids)
        return

    originals = []
    for page_id in cmd.source_page_ids:
        index = state.index_of(page_id)
        if index < 0 or not isinstance(state.pages[index], PageReference):
            continue
        originals.append((index, state.pages[index]))
    # High to low so earlier insertion points stay valid
    originals.sort(key=lambda item: item[0], reverse=True)

    is_redo = bool(cmd.created_page_ids)
    created = []
    for n, (index, page) in enumerate(originals):
        reuse = n < len(cmd.created_page_ids)
        new_page_id = cmd.created_page_ids[-1 - n] if is_redo and reuse else new_id()
        duplicate = page.model_copy(deep=True)
        duplicate.id = new_page_id
        state.insert_pages(index + 1, [duplicate])
        created.append(new_page_id)

    if not is_redo:
        cmd.created_page_ids = list(reversed(created))


def _reorder_pages(ex: "Executor", cmd: ReorderPagesCommand, direction: Direction) -> None:
    order = cmd.new_order if direction is Direction.EXECUTE else cmd.previous_order
    ex.state.reorder_pages(clone_entries(order))


def _rotate_pages(ex: "Executor", cmd: RotatePagesCommand, direction: Direction) -> None:
    degrees = cmd.degrees if direction is Direction.EXECUTE else -cmd.degrees
    for page_id in cmd.page_ids:
        ex.state.rotate_page(page_id, degrees)


def _resize_pages(ex: "Executor", cmd: ResizePagesCommand, direction: Direction) -> None:
    state = ex.state
    if direction is Direction.EXECUTE:
        if not cmd.previous_targets:
            previous = []
            for target in cmd.targets:
                page = state.find_page(target.page_id)
                dims = page.target_dimensions if page is not None else None
                previous.append(
                    ResizeTarget(page_id=target.page_id, target_dimensions=dims.model_copy() if dims else None)
                )
            cmd.previous_targets = previous
        for target in cmd.targets:
            state.set_page_target_dimensions(target.page_id, target.target_dimensions)
        return

    for target in cmd.previous_targets:
        state.set_page_target_dimensions(target.page_id, target.target_dimensions)


def _split_group(ex: "Executor", cmd: SplitGroupCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        ex.state.insert_pages(cmd.index, [clone_entry(cmd.divider)])
        return
    ex.state.delete_pages([cmd.divider.id])


def _remove_source(ex: "Executor", cmd: RemoveSourceCommand, direction: Direction) -> None:
    state = ex.state
    source_id = cmd.source_file.id
    if direction is Direction.EXECUTE:
        if not cmd.captured:
            cmd.page_snapshots = capture_snapshots(
                state, lambda p: isinstance(p, PageReference) and p.source_file_id == source_id
            )
            cmd.captured = True
        state.delete_pages(s.page.id for s in cmd.page_snapshots)
        state.remove_source_only(source_id)
        return

    if source_id not in state.sources:
        state.add_source_file(cmd.source_file.model_copy(deep=True))
    restore_snapshots(state, cmd.page_snapshots)


def _add_redaction(ex: "Executor", cmd: AddRedactionCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        ex.state.add_redactions(cmd.page_id, cmd.redactions)
        return
    ex.state.remove_redactions(cmd.page_id, [r.id for r in cmd.redactions])


def _update_redaction(ex: "Executor", cmd: UpdateRedactionCommand, direction: Direction) -> None:
    mark = cmd.after if direction is Direction.EXECUTE else cmd.before
    ex.state.update_redaction(cmd.page_id, mark)


def _delete_redaction(ex: "Executor", cmd: DeleteRedactionCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        ex.state.remove_redaction(cmd.page_id, cmd.redaction.id)
        return
    ex.state.add_redaction(cmd.page_id, cmd.redaction)


def _update_outline(ex: "Executor", cmd: UpdateOutlineCommand, direction: Direction) -> None:
    if direction is Direction.EXECUTE:
        ex.state.set_outline_tree(cmd.next_tree)
        ex.state.set_outline_dirty(cmd.next_dirty)
        return
    ex.state.set_outline_tree(cmd.previous_tree)
    ex.state.set_outline_dirty(cmd.previous_dirty)


def _batch(ex: "Executor", cmd: BatchCommand, direction: Direction) -> None:
    children = cmd.children if direction is Direction.EXECUTE else list(reversed(cmd.children))
    for child in children:
        ex.apply(child, direction)


DEFAULT_HANDLERS: dict[str, Handler] = {
    CommandType.ADD: _add_pages,
    CommandType.ADD_SOURCE: _add_source,
    CommandType.DELETE: _delete_pages,
    CommandType.DUPLICATE: _duplicate_pages,
    CommandType.REORDER: _reorder_pages,
    CommandType.ROTATE: _rotate_pages,
    CommandType.RESIZE: _resize_pages,
    CommandType.SPLIT: _split_group,
    CommandType.REMOVE_SOURCE: _remove_source,
    CommandType.REDACT: _add_redaction,
    CommandType.UPDATE_REDACTION: _update_redaction,
    CommandType.DELETE_REDACTION: _delete_redaction,
    CommandType.UPDATE_OUTLINE: _update_outline,
    CommandType.BATCH: _batch,
}


class Executor:
    """Runs commands against one document."""

    def __init__(self, state: DocumentState, handlers: Optional[dict[str, Handler]] = None):
        self.state = state
        self.handlers = dict(DEFAULT_HANDLERS)
        if handlers:
            self.handlers.update(handlers)

    def apply(self, command: Command, direction: Direction) -> None:
        handler = self.handlers.get(command.type)
        if handler is None:
            logger.warning("No command handler registered for %r", command.type)
            return
        handler(self, command, direction)

    def execute(self, command: Command) -> None:
        self.apply(command, Direction.EXECUTE)

    def undo(self, command: Command) -> None:
        self.apply(command, Direction.UNDO)
