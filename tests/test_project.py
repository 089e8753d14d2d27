import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from pagestack.models import ProjectMeta, RedactionMark, ResizeTarget, TargetDimensions
from pagestack.project import Workspace, normalize_title
from pagestack.storage import FileStore, MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def workspace(store):
    return Workspace(store, autosave=False)


@pytest.fixture
def session(workspace, make_pdf):
    session = workspace.create_project("Report")
    session.import_pdf(make_pdf(pages=3), "report.pdf")
    return session


class TestEdits:
    def test_import_is_one_undoable_step(self, session, store):
        assert len(session.history.entries) == 1
        assert session.history.undo_name == 'Import "report.pdf"'
        (source_id,) = session.state.sources
        assert len(session.state.pages) == 3
        assert store.list_source_keys() == [source_id]

        session.history.undo()
        assert session.state.sources == {}
        assert session.state.pages == []

        session.history.redo()
        assert list(session.state.sources) == [source_id]
        assert len(session.state.pages) == 3

    def test_page_operations(self, session):
        ids = session.state.page_ids()
        session.rotate_pages([ids[0]], 90)
        session.duplicate_pages([ids[1]])
        session.delete_pages([ids[2]])
        session.split_at(1)
        session.resize_pages([ResizeTarget(page_id=ids[0], target_dimensions=TargetDimensions(width=595, height=842))])

        assert session.state.find_page(ids[0]).rotation == 90
        assert session.state.find_page(ids[0]).target_dimensions.width == 595
        assert len(session.state.pages) == 4
        assert session.state.pages[1].is_divider

        session.history.jump_to(0)
        assert session.state.page_ids() == ids

    def test_reorder(self, session):
        ids = session.state.page_ids()
        session.reorder_pages(list(reversed(ids)))
        assert session.state.page_ids() == list(reversed(ids))
        session.history.undo()
        assert session.state.page_ids() == ids

    @pytest.mark.parametrize("order", [[], ["x", "y", "z"], "dup"])
    def test_reorder_must_be_a_permutation(self, session, order):
        if order == "dup":
            first = session.state.page_ids()[0]
            order = [first, first, first]
        with pytest.raises(ValueError):
            session.reorder_pages(order)

    def test_unknown_ids(self, session):
        with pytest.raises(KeyError):
            session.delete_pages(["missing"])
        with pytest.raises(KeyError):
            session.remove_source("missing")
        with pytest.raises(KeyError):
            session.delete_redaction(session.state.page_ids()[0], "missing")
        with pytest.raises(ValueError):
            session.delete_pages([])
        with pytest.raises(ValueError):
            session.split_at(99)

    def test_redactions(self, session):
        page_id = session.state.page_ids()[0]
        mark = RedactionMark(id="r1", x=1, y=2, width=3, height=4)
        session.add_redactions(page_id, [mark])
        session.update_redaction(page_id, mark.model_copy(update={"color": "#ff0000"}))
        assert session.state.find_page(page_id).redactions[0].color == "#ff0000"

        session.delete_redaction(page_id, "r1")
        assert session.state.find_page(page_id).redactions == []

        session.history.undo()
        session.history.undo()
        assert session.state.find_page(page_id).redactions[0].color == "#000000"

    def test_remove_source(self, session):
        (source_id,) = session.state.sources
        session.remove_source(source_id)
        assert session.state.pages == []
        assert session.state.sources == {}
        session.history.undo()
        assert len(session.state.pages) == 3

    def test_outline(self, session):
        tree = [{"id": "n1", "title": "Intro", "children": []}]
        session.update_outline(tree, dirty=True, label="Add bookmark")
        assert session.history.undo_name == "Add bookmark"
        assert session.state.outline_tree == tree
        assert session.state.outline_dirty is True
        session.history.undo()
        assert session.state.outline_tree == []
        assert session.state.outline_dirty is False


class TestPersistence:
    def test_save_and_reopen(self, session, store):
        ids = session.state.page_ids()
        session.delete_pages([ids[0], ids[2]])
        session.rotate_pages([ids[1]], 180)
        session.history.undo()
        session.update_outline([{"id": "n1", "title": "Intro", "children": []}])
        session.save()

        reopened = Workspace(store, autosave=False).open_project(session.id)
        assert reopened.meta.title == "Report"
        assert reopened.state.snapshot() == session.state.snapshot()
        assert reopened.history.pointer == session.history.pointer
        assert [e.command.label for e in reopened.history.entries] == [
            'Import "report.pdf"',
            "Delete 2 pages",
            "Edit outline",
        ]

        reopened.history.jump_to(0)
        assert reopened.state.page_ids() == ids

    def test_file_store_round_trip(self, tmp_path, make_pdf):
        first = Workspace(FileStore(tmp_path), autosave=False)
        session = first.create_project()
        session.import_pdf(make_pdf(pages=2), "a.pdf")
        session.duplicate_pages(session.state.page_ids()[:1])
        session.save()

        reopened = Workspace(FileStore(tmp_path), autosave=False).open_project(session.id)
        assert reopened.state.snapshot() == session.state.snapshot()
        reopened.history.undo()
        reopened.history.redo()
        assert reopened.state.page_ids() == session.state.page_ids()

    def test_empty_page_map_is_rebuilt_by_replay(self, workspace, store, make_pdf):
        session = workspace.create_project()
        session.import_pdf(make_pdf(pages=2), "a.pdf")
        session.rotate_pages(session.state.page_ids(), 90)
        record = session.to_project_state()
        record.page_map = []
        store.put_state(record)

        reopened = Workspace(store, autosave=False).open_project(session.id)
        assert [p.rotation for p in reopened.state.pages] == [90, 90]
        assert reopened.history.pointer == 1

    def test_open_missing_project(self, workspace):
        with pytest.raises(KeyError):
            workspace.open_project("doesnotexist")
        with pytest.raises(ValueError):
            workspace.open_project("../escape")

    def test_open_returns_live_session(self, workspace, session):
        assert workspace.open_project(session.id) is session


class TestLifecycle:
    def test_create_normalizes_title(self, workspace, store):
        session = workspace.create_project("   ")
        assert session.meta.title == "Untitled project"
        assert len(session.id) == 16
        assert store.get_state(session.id) is not None
        assert normalize_title("  Q3  ") == "Q3"

    def test_list_sorted_and_trash_hidden(self, workspace, store):
        store.put_meta(ProjectMeta(id="old", title="Old", created_at=1, updated_at=10))
        store.put_meta(ProjectMeta(id="new", title="New", created_at=1, updated_at=30))
        store.put_meta(ProjectMeta(id="gone", title="Gone", created_at=1, updated_at=20, trashed_at=40))
        assert [m.id for m in workspace.list_projects()] == ["new", "old"]
        assert [m.id for m in workspace.list_projects(include_trashed=True)] == ["new", "gone", "old"]

    def test_rename(self, workspace, session, store):
        workspace.rename_project(session.id, "  Final  ")
        assert store.get_meta(session.id).title == "Final"
        assert session.meta.title == "Final"

    def test_trash_restore_and_delete(self, workspace, session, store):
        workspace.trash_project(session.id)
        assert session.id not in workspace.sessions
        assert store.get_meta(session.id).trashed_at is not None

        workspace.restore_project(session.id)
        assert store.get_meta(session.id).trashed_at is None

        workspace.delete_project(session.id)
        assert store.get_meta(session.id) is None
        assert store.get_state(session.id) is None
        with pytest.raises(KeyError):
            workspace.delete_project(session.id)

    def test_empty_trash(self, workspace, store):
        keep = workspace.create_project("Keep")
        doomed = workspace.create_project("Doomed")
        workspace.trash_project(doomed.id)
        assert workspace.empty_trash() == [doomed.id]
        assert [m.id for m in workspace.list_projects(include_trashed=True)] == [keep.id]


class TestGarbageCollection:
    def test_deleted_project_blobs_are_reclaimed(self, workspace, session, store):
        session.save()
        (source_id,) = session.state.sources
        assert asyncio.run(workspace.collect_garbage()) == []

        workspace.delete_project(session.id)
        assert asyncio.run(workspace.collect_garbage()) == [source_id]
        assert store.list_source_keys() == []

    def test_unsaved_import_is_protected_by_live_state(self, workspace, session, store):
        # Only the empty state written at creation is persisted
        (source_id,) = session.state.sources
        assert asyncio.run(workspace.collect_garbage()) == []
        assert store.list_source_keys() == [source_id]

    def test_blob_stored_before_its_command_is_protected(self, workspace, store, make_pdf):
        session = workspace.create_project()
        source, pages = session.load_pdf(make_pdf(pages=1), "late.pdf")
        assert asyncio.run(workspace.collect_garbage()) == []

        session.add_source_pages(source, pages)
        assert session.pending_source_ids == set()
        assert source.id in session.state.sources

    def test_eviction_reaches_loader(self, workspace, session):
        (source_id,) = session.state.sources
        workspace.loader.open(source_id)
        workspace.delete_project(session.id)
        asyncio.run(workspace.collect_garbage())
        assert source_id not in workspace.loader

    def test_storage_breakdown(self, workspace, session, store):
        session.save()
        (source_id,) = session.state.sources
        breakdown = workspace.storage_breakdown()
        assert breakdown.active_bytes == store.source_size(source_id)
        assert breakdown.cache_bytes == 0


def test_render_page(workspace, session):
    png = workspace.render_page(session.id, session.state.page_ids()[0], scale=0.5)
    assert png.startswith(b"\x89PNG")
    with pytest.raises(KeyError):
        workspace.render_page(session.id, "missing")


def test_autosave_persists_after_quiet_period(store, make_pdf):
    async def scenario():
        workspace = Workspace(store, debounce_s=0.01)
        session = workspace.create_project("Auto")
        session.import_pdf(make_pdf(pages=2), "auto.pdf")
        session.rotate_pages(session.state.page_ids(), 90)
        await workspace.flush()
        workspace.shutdown()
        return session.id

    project_id = asyncio.run(scenario())
    saved = store.get_state(project_id)
    assert saved.history_pointer == 1
    assert [p.rotation for p in saved.page_map] == [90, 90]
    assert len(store.list_source_keys()) == 1


class TestConcurrentAccess:
    def test_parallel_first_opens_share_one_session(self, workspace, store):
        project_id = workspace.create_project("Shared").id
        workspace.close_project(project_id)

        class SlowStore(MemoryStore):
            def get_state(self, project_id):
                time.sleep(0.05)
                return super().get_state(project_id)

        slow = SlowStore()
        slow.meta, slow.states = store.meta, store.states
        shared = Workspace(slow, autosave=False)
        with ThreadPoolExecutor(max_workers=2) as pool:
            first, second = pool.map(shared.open_project, [project_id, project_id])
        assert first is second
        assert list(shared.sessions) == [project_id]

    def test_delete_waits_for_save_in_progress(self):
        entered = threading.Event()
        release = threading.Event()

        class BlockingStore(MemoryStore):
            block = False

            def put_state(self, state):
                if self.block:
                    entered.set()
                    release.wait(5)
                super().put_state(state)

        store = BlockingStore()
        workspace = Workspace(store, autosave=False)
        session = workspace.create_project("Doomed")
        store.block = True

        saver = threading.Thread(target=session.save)
        saver.start()
        assert entered.wait(5)
        deleter = threading.Thread(target=workspace.delete_project, args=(session.id,))
        deleter.start()
        deleter.join(0.05)
        assert deleter.is_alive()

        release.set()
        saver.join(5)
        deleter.join(5)
        assert store.get_state(session.id) is None
        assert store.get_meta(session.id) is None

        session.save()
        assert store.get_state(session.id) is None
        assert store.get_meta(session.id) is None
