"""Undo/redo history: a pointer-addressed list of executed commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .commands import BatchCommand, Command, now_ms
from .config import MAX_HISTORY_ENTRIES, POINTER_START, ROOT_ENTRY_LABEL
from .executor import Executor
from .models import HistoryDisplayEntry, HistoryResponse
from .registry import CommandRegistry

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    command: Command
    timestamp: float


class HistoryManager:
    """Linear history over one document.

    ``pointer`` indexes the most recently applied entry (-1: nothing
    applied). Entries past the pointer are the redo branch and are dropped by
    the next :meth:`execute`.
    """

    def __init__(
        self,
        executor: Executor,
        registry: CommandRegistry,
        max_entries: int = MAX_HISTORY_ENTRIES,
    ):
        self.executor = executor
        self.registry = registry
        self.max_entries = max_entries
        self.entries: list[HistoryEntry] = []
        self.pointer = POINTER_START
        self.session_start = now_ms()
        self._listeners: list[Callable[[], None]] = []

    # -- Change notification --

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    # -- Queries --

    @property
    def can_undo(self) -> bool:
        return self.pointer >= 0

    @property
    def can_redo(self) -> bool:
        return self.pointer < len(self.entries) - 1

    @property
    def undo_name(self) -> Optional[str]:
        if not self.can_undo:
            return None
        return self.entries[self.pointer].command.label

    @property
    def redo_name(self) -> Optional[str]:
        if not self.can_redo:
            return None
        return self.entries[self.pointer + 1].command.label

    def history_list(self) -> list[HistoryDisplayEntry]:
        root = HistoryDisplayEntry(
            label=ROOT_ENTRY_LABEL,
            type="Root",
            timestamp=self.session_start,
            pointer=POINTER_START,
            is_current=self.pointer == POINTER_START,
            is_undone=False,
        )
        return [root] + [
            HistoryDisplayEntry(
                label=entry.command.label,
                type=entry.command.type,
                timestamp=entry.timestamp,
                pointer=index,
                is_current=index == self.pointer,
                is_undone=index > self.pointer,
            )
            for index, entry in enumerate(self.entries)
        ]

    def describe(self) -> HistoryResponse:
        return HistoryResponse(
            pointer=self.pointer,
            can_undo=self.can_undo,
            can_redo=self.can_redo,
            undo_name=self.undo_name,
            redo_name=self.redo_name,
            entries=self.history_list(),
        )

    # -- Operations --

    def execute(self, command: Command) -> Command:
        if self.pointer < len(self.entries) - 1:
            del self.entries[self.pointer + 1 :]

        self.executor.execute(command)
        self.entries.append(HistoryEntry(command=command, timestamp=command.created_at))

        overflow = len(self.entries) - self.max_entries
        if overflow > 0:
            del self.entries[:overflow]

        self.pointer = len(self.entries) - 1
        self._changed()
        return command

    def execute_batch(self, commands: list[Optional[Command]], label: Optional[str] = None) -> Optional[Command]:
        """Run several commands as a single undoable step."""
        valid = [c for c in commands if c is not None]
        if not valid:
            return None
        if len(valid) == 1:
            return self.execute(valid[0])
        return self.execute(BatchCommand(valid, label))

    def undo(self) -> bool:
        if not self.can_undo:
            return False
        self.executor.undo(self.entries[self.pointer].command)
        self.pointer -= 1
        self._changed()
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self.pointer += 1
        self.executor.execute(self.entries[self.pointer].command)
        self._changed()
        return True

    def jump_to(self, index: int) -> None:
        """Step undo/redo until ``pointer == index``. Out-of-range is a no-op."""
        if index < POINTER_START or index >= len(self.entries):
            return
        while self.pointer > index:
            self.undo()
        while self.pointer < index:
            self.redo()

    def clear(self) -> None:
        self.entries = []
        self.pointer = POINTER_START
        self._changed()

    # -- Persistence --

    def serialize(self) -> list[dict[str, Any]]:
        """JSON-safe records for every entry, undone ones included."""
        return [entry.command.serialize() for entry in self.entries]

    def rehydrate(
        self,
        records: Optional[list[dict[str, Any]]],
        pointer: int = POINTER_START,
        updated_at: Optional[float] = None,
    ) -> None:
        """Restore history from persisted records.

        Unusable records are skipped. Entries up to the pointer are replayed
        only when the document is empty; otherwise the restored page list is
        taken as already reflecting them. Replay stops at the first failure.
        """
        self.session_start = updated_at or now_ms()
        commands = self.registry.deserialize_all(records)
        self.entries = [HistoryEntry(command=c, timestamp=c.created_at) for c in commands]

        if pointer is None:
            pointer = POINTER_START
        self.pointer = max(POINTER_START, min(pointer, len(self.entries) - 1))

        if not self.executor.state.pages and self.pointer >= 0:
            for index in range(self.pointer + 1):
                command = self.entries[index].command
                try:
                    self.executor.execute(command)
                except Exception:
                    logger.exception("Failed to replay %s command %s during restore", command.type, command.id)
                    self.pointer = index - 1
                    break
