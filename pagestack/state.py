"""In-memory document store: sources, the linear page list, and the outline."""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from .config import VALID_ROTATIONS
from .models import (
    DividerReference,
    DocumentMetadata,
    PageEntry,
    PageReference,
    RedactionMark,
    SourceFile,
    TargetDimensions,
)

logger = logging.getLogger(__name__)


def clone_entry(entry: PageEntry) -> PageEntry:
    return entry.model_copy(deep=True)


def clone_entries(entries) -> list[PageEntry]:
    return [clone_entry(e) for e in entries]


def clone_tree(tree: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return copy.deepcopy(tree)


class DocumentState:
    """The live, mutable document a project edits.

    Only primitive mutations live here; undo semantics belong to the
    executor. Dividers and content pages share one ordered ``pages`` list.
    """

    def __init__(self) -> None:
        self.sources: dict[str, SourceFile] = {}
        self.pages: list[PageEntry] = []
        self.outline_tree: list[dict[str, Any]] = []
        self.outline_dirty = False
        self.metadata: Optional[DocumentMetadata] = None

    # -- Queries --

    def find_page(self, page_id: str) -> Optional[PageReference]:
        for entry in self.pages:
            if isinstance(entry, PageReference) and entry.id == page_id:
                return entry
        return None

    def index_of(self, entry_id: str) -> int:
        for i, entry in enumerate(self.pages):
            if entry.id == entry_id:
                return i
        return -1

    def page_ids(self) -> list[str]:
        return [entry.id for entry in self.pages]

    def source_in_use(self, source_id: str) -> bool:
        return any(
            isinstance(entry, PageReference) and entry.source_file_id == source_id
            for entry in self.pages
        )

    def active_source_ids(self) -> list[str]:
        return list(self.sources)

    def _require_page(self, page_id: str) -> PageReference:
        page = self.find_page(page_id)
        if page is None:
            raise KeyError(f"Page {page_id} not found")
        return page

    # -- Sources --

    def add_source_file(self, source: SourceFile) -> None:
        self.sources[source.id] = source

    def remove_source_only(self, source_id: str) -> None:
        self.sources.pop(source_id, None)

    # -- Pages --

    def add_pages(self, pages: list[PageReference]) -> None:
        self.pages.extend(pages)

    def insert_pages(self, index: int, entries: list[PageEntry]) -> None:
        self.pages[index:index] = entries

    def delete_pages(self, ids) -> None:
        doomed = set(ids)
        self.pages = [entry for entry in self.pages if entry.id not in doomed]

    def reorder_pages(self, new_order: list[PageEntry]) -> None:
        self.pages = list(new_order)

    def rotate_page(self, page_id: str, degrees: int) -> None:
        page = self.find_page(page_id)
        if page is None:
            logger.warning("rotate: page %s not found", page_id)
            return
        rotation = (page.rotation + degrees) % 360
        if rotation not in VALID_ROTATIONS:
            raise ValueError(f"Rotation {rotation} is not a multiple of 90")
        page.rotation = rotation

    def set_page_target_dimensions(self, page_id: str, dims: Optional[TargetDimensions]) -> None:
        page = self.find_page(page_id)
        if page is None:
            logger.warning("resize: page %s not found", page_id)
            return
        page.target_dimensions = dims.model_copy() if dims else None

    # -- Redactions --

    def add_redactions(self, page_id: str, marks: list[RedactionMark]) -> None:
        page = self._require_page(page_id)
        page.redactions.extend(m.model_copy() for m in marks)

    def add_redaction(self, page_id: str, mark: RedactionMark) -> None:
        self.add_redactions(page_id, [mark])

    def update_redaction(self, page_id: str, mark: RedactionMark) -> None:
        page = self._require_page(page_id)
        for i, existing in enumerate(page.redactions):
            if existing.id == mark.id:
                page.redactions[i] = mark.model_copy()
                return
        raise KeyError(f"Redaction {mark.id} not found on page {page_id}")

    def remove_redactions(self, page_id: str, redaction_ids) -> None:
        page = self._require_page(page_id)
        doomed = set(redaction_ids)
        page.redactions = [m for m in page.redactions if m.id not in doomed]

    def remove_redaction(self, page_id: str, redaction_id: str) -> None:
        self.remove_redactions(page_id, [redaction_id])

    # -- Outline --

    def set_outline_tree(self, tree: list[dict[str, Any]]) -> None:
        self.outline_tree = clone_tree(tree)

    def set_outline_dirty(self, value: bool) -> None:
        self.outline_dirty = value

    # -- Lifecycle --

    def reset(self) -> None:
        self.sources.clear()
        self.pages = []
        self.outline_tree = []
        self.outline_dirty = False
        self.metadata = None

    def snapshot(self) -> dict[str, Any]:
        """Structural dump used for equality checks and persistence."""
        return {
            "sources": {sid: src.dump() for sid, src in self.sources.items()},
            "pages": [entry.dump() for entry in self.pages],
            "outlineTree": clone_tree(self.outline_tree),
            "outlineDirty": self.outline_dirty,
        }


def make_divider(divider_id: str) -> DividerReference:
    return DividerReference(id=divider_id, is_divider=True)
