import logging

import pytest

from pagestack.commands import (
    AddPagesCommand,
    BatchCommand,
    Command,
    DeletePagesCommand,
    RotatePagesCommand,
    SplitGroupCommand,
)
from pagestack.executor import Direction, Executor
from pagestack.history import HistoryManager
from pagestack.state import DocumentState


class RecordingCommand(Command):
    type = "Recording"

    def __init__(self, tag, **kwargs):
        super().__init__(**kwargs)
        self.tag = tag
        self.name = f"Step {tag}"

    def payload(self):
        return {"tag": self.tag}


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def recording_history(state, registry, call_log):
    def handler(ex, cmd, direction):
        call_log.append((direction.value, cmd.tag))

    return HistoryManager(Executor(state, handlers={"Recording": handler}), registry)


class TestPointer:
    def test_starts_empty(self, history):
        assert history.pointer == -1
        assert not history.can_undo
        assert not history.can_redo
        assert history.undo_name is None
        assert history.redo_name is None

    def test_execute_undo_redo(self, history, state):
        history.execute(DeletePagesCommand(["a0"]))
        history.execute(RotatePagesCommand(["a1"], 90))
        assert history.pointer == 1
        assert history.undo_name == "Rotate right page"

        assert history.undo() is True
        assert history.pointer == 0
        assert history.redo_name == "Rotate right page"
        assert state.find_page("a1").rotation == 0

        assert history.redo() is True
        assert history.pointer == 1
        assert state.find_page("a1").rotation == 90
        assert history.redo() is False

    def test_undo_at_start_is_noop(self, history):
        assert history.undo() is False
        assert history.pointer == -1

    def test_execute_truncates_redo_branch(self, history):
        history.execute(SplitGroupCommand(1))
        history.execute(SplitGroupCommand(2))
        history.undo()
        history.undo()
        history.execute(DeletePagesCommand(["a0"]))
        assert len(history.entries) == 1
        assert history.pointer == 0
        assert not history.can_redo

    def test_cap_drops_oldest(self, state, registry):
        history = HistoryManager(Executor(state), registry, max_entries=3)
        for _ in range(5):
            history.execute(RotatePagesCommand(["a0"], 90))
        assert len(history.entries) == 3
        assert history.pointer == 2
        assert state.find_page("a0").rotation == 90

    def test_default_cap_is_fifty(self, history):
        for _ in range(55):
            history.execute(RotatePagesCommand(["a0"], 90))
        assert len(history.entries) == 50
        assert history.pointer == 49


class TestBatch:
    def test_empty_batch_is_noop(self, history):
        assert history.execute_batch([None, None]) is None
        assert history.entries == []

    def test_single_command_is_not_wrapped(self, history):
        command = SplitGroupCommand(1)
        assert history.execute_batch([command, None], "Ignored") is command
        assert history.entries[0].command is command

    def test_many_commands_become_one_entry(self, history, state):
        history.execute_batch([DeletePagesCommand(["a0"]), RotatePagesCommand(["a1"], 90)], "Tidy")
        assert len(history.entries) == 1
        assert isinstance(history.entries[0].command, BatchCommand)
        assert history.undo_name == "Tidy"

        history.undo()
        assert state.page_ids() == ["a0", "a1", "a2", "b0", "b1"]
        assert state.find_page("a1").rotation == 0

    def test_children_undo_in_reverse_order(self, recording_history, call_log):
        recording_history.execute_batch([RecordingCommand(1), RecordingCommand(2), RecordingCommand(3)])
        recording_history.undo()
        assert call_log == [
            ("execute", 1),
            ("execute", 2),
            ("execute", 3),
            ("undo", 3),
            ("undo", 2),
            ("undo", 1),
        ]


class TestJump:
    def test_jump_back_and_forward(self, recording_history, call_log):
        for tag in range(4):
            recording_history.execute(RecordingCommand(tag))
        call_log.clear()

        recording_history.jump_to(0)
        assert recording_history.pointer == 0
        assert call_log == [("undo", 3), ("undo", 2), ("undo", 1)]

        call_log.clear()
        recording_history.jump_to(2)
        assert recording_history.pointer == 2
        assert call_log == [("execute", 1), ("execute", 2)]

    def test_jump_to_root(self, recording_history):
        recording_history.execute(RecordingCommand(0))
        recording_history.jump_to(-1)
        assert recording_history.pointer == -1

    @pytest.mark.parametrize("index", [-2, 5, 100])
    def test_out_of_range_is_ignored(self, recording_history, call_log, index):
        recording_history.execute(RecordingCommand(0))
        recording_history.jump_to(index)
        assert recording_history.pointer == 0
        assert call_log == [("execute", 0)]


class TestHistoryList:
    def test_root_entry_and_flags(self, history):
        history.execute(SplitGroupCommand(1))
        history.execute(SplitGroupCommand(2))
        history.undo()
        entries = history.history_list()
        assert [e.pointer for e in entries] == [-1, 0, 1]
        assert entries[0].label == "Session Start"
        assert entries[0].type == "Root"
        assert [e.is_current for e in entries] == [False, True, False]
        assert [e.is_undone for e in entries] == [False, False, True]

    def test_describe(self, history):
        history.execute(SplitGroupCommand(1))
        described = history.describe().dump()
        assert described["canUndo"] is True
        assert described["canRedo"] is False
        assert described["undoName"] == "Split document"
        assert len(described["entries"]) == 2


class TestListeners:
    def test_notified_on_every_change(self, history):
        calls = []
        history.subscribe(lambda: calls.append("changed"))
        history.execute(SplitGroupCommand(1))
        history.undo()
        history.redo()
        history.clear()
        assert len(calls) == 4

    def test_unsubscribe(self, history):
        calls = []
        unsubscribe = history.subscribe(lambda: calls.append("changed"))
        unsubscribe()
        history.execute(SplitGroupCommand(1))
        assert calls == []

    def test_noop_undo_does_not_notify(self, history):
        calls = []
        history.subscribe(lambda: calls.append("changed"))
        history.undo()
        assert calls == []


class TestRehydrate:
    def test_serialize_includes_undone_entries(self, history):
        history.execute(SplitGroupCommand(1))
        history.execute(SplitGroupCommand(2))
        history.undo()
        assert len(history.serialize()) == 2

    def test_replays_into_empty_document(self, registry, source_a, make_pages):
        source_history = HistoryManager(Executor(DocumentState()), registry)
        source_history.execute(AddPagesCommand(source_a, make_pages(source_a, "a")))
        source_history.execute(DeletePagesCommand(["a1"]))
        source_history.execute(RotatePagesCommand(["a0"], 90))
        source_history.undo()
        expected = source_history.executor.state.snapshot()

        restored_state = DocumentState()
        restored = HistoryManager(Executor(restored_state), registry)
        restored.rehydrate(source_history.serialize(), source_history.pointer, 1234)

        assert restored.pointer == 1
        assert restored.session_start == 1234
        assert restored_state.snapshot() == expected
        assert restored.can_redo

        restored.redo()
        assert restored_state.find_page("a0").rotation == 90

    def test_existing_pages_are_not_replayed(self, history, state, registry):
        records = [DeletePagesCommand(["a0"]).serialize()]
        before = state.snapshot()
        history.rehydrate(records, 0)
        assert state.snapshot() == before
        assert history.pointer == 0

        history.undo()
        assert state.page_ids().count("a0") == 1

    @pytest.mark.parametrize("pointer,expected", [(10, 1), (-5, -1), (None, -1)])
    def test_pointer_is_clamped(self, history, pointer, expected):
        records = [SplitGroupCommand(1).serialize(), SplitGroupCommand(2).serialize()]
        history.rehydrate(records, pointer)
        assert history.pointer == expected

    def test_invalid_records_are_skipped(self, history):
        records = [SplitGroupCommand(1).serialize(), {"type": "Unknown", "payload": {"id": "x"}}, "garbage"]
        history.rehydrate(records, 2)
        assert len(history.entries) == 1
        assert history.pointer == 0

    def test_replay_stops_at_first_failure(self, registry, source_a, make_pages, caplog):
        state = DocumentState()
        history = HistoryManager(Executor(state), registry)
        records = [
            AddPagesCommand(source_a, make_pages(source_a, "a")).serialize(),
            RotatePagesCommand(["a0"], 90).serialize(),
            {"version": 1, "type": "AddRedaction", "payload": {"id": "r", "pageId": "missing", "redactions": [
                {"id": "m", "x": 0, "y": 0, "width": 1, "height": 1}
            ]}, "timestamp": 0},
            RotatePagesCommand(["a0"], 90).serialize(),
        ]
        with caplog.at_level(logging.ERROR, logger="pagestack.history"):
            history.rehydrate(records, 3)

        assert "Failed to replay AddRedaction" in caplog.text
        assert history.pointer == 1
        assert state.find_page("a0").rotation == 90

    def test_rehydrate_does_not_notify(self, history):
        calls = []
        history.subscribe(lambda: calls.append("changed"))
        history.rehydrate([SplitGroupCommand(1).serialize()], 0)
        assert calls == []

    def test_clear(self, history):
        history.execute(SplitGroupCommand(1))
        history.clear()
        assert history.entries == []
        assert history.pointer == -1


def test_direction_values():
    assert Direction.EXECUTE.value == "execute"
    assert Direction.UNDO.value == "undo"
