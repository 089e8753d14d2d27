"""Pydantic models for persisted records and API request/response bodies."""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .config import DEFAULT_REDACTION_COLOR, POINTER_START


class CamelModel(BaseModel):
    """Base model whose JSON field names are camelCase (``sourceFileId``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# -- Sources --


class PageMetrics(CamelModel):
    width: float
    height: float
    rotation: int = 0


class PdfOutlineNode(CamelModel):
    title: str
    page_index: int  # 0-based page in the source file
    children: list["PdfOutlineNode"] = Field(default_factory=list)


class DocumentMetadata(CamelModel):
    title: str = ""
    author: str = ""
    subject: str = ""
    keywords: list[str] = Field(default_factory=list)


class SourceFile(CamelModel):
    id: str
    filename: str
    page_count: int
    file_size: int  # bytes
    added_at: int  # ms since epoch
    color: str = "blue"
    page_meta_data: list[PageMetrics] = Field(default_factory=list)
    outline: Optional[list[PdfOutlineNode]] = None
    metadata: Optional[DocumentMetadata] = None


# -- Pages --


class TargetDimensions(CamelModel):
    width: float
    height: float


class RedactionMark(CamelModel):
    id: str
    x: float
    y: float
    width: float
    height: float
    color: str = DEFAULT_REDACTION_COLOR


class PageReference(CamelModel):
    id: str
    source_file_id: str
    source_page_index: int  # 0-based index in the original file
    rotation: int = 0  # 0 | 90 | 180 | 270
    group_id: Optional[str] = None
    target_dimensions: Optional[TargetDimensions] = None
    redactions: list[RedactionMark] = Field(default_factory=list)
    is_divider: Literal[False] = False


class DividerReference(CamelModel):
    """Structural split marker; never carries a source id."""

    id: str
    is_divider: Literal[True]


PageEntry = Union[PageReference, DividerReference]

_page_entries = TypeAdapter(list[PageEntry])


def parse_entries(raw: list[Any]) -> list[PageEntry]:
    """Validate a list of page/divider records."""
    return _page_entries.validate_python(raw)


class PageSnapshot(CamelModel):
    page: PageEntry
    index: int


class ResizeTarget(CamelModel):
    page_id: str
    target_dimensions: Optional[TargetDimensions] = None


# -- Outline --


class OutlineDest(CamelModel):
    type: str = "page"
    target_page_id: Optional[str] = None
    fit: str = "Fit"


class OutlineNode(CamelModel):
    id: str
    parent_id: Optional[str] = None
    title: str
    expanded: bool = True
    dest: OutlineDest = Field(default_factory=OutlineDest)
    children: list["OutlineNode"] = Field(default_factory=list)


# -- Persistence --


class ProjectState(CamelModel):
    id: str
    active_source_ids: list[str] = Field(default_factory=list)
    page_map: list[PageEntry] = Field(default_factory=list)
    # Raw records: migrated and validated on rehydration, not here
    history: list[dict[str, Any]] = Field(default_factory=list)
    history_pointer: int = POINTER_START
    updated_at: int = 0
    outline_tree: list[dict[str, Any]] = Field(default_factory=list)
    outline_dirty: bool = False
    metadata: Optional[DocumentMetadata] = None


class ProjectMeta(CamelModel):
    id: str
    title: str
    created_at: int
    updated_at: int
    trashed_at: Optional[int] = None


# -- History display --


class HistoryDisplayEntry(CamelModel):
    label: str
    type: str
    timestamp: float
    pointer: int
    is_current: bool
    is_undone: bool


class HistoryResponse(CamelModel):
    pointer: int
    can_undo: bool
    can_redo: bool
    undo_name: Optional[str] = None
    redo_name: Optional[str] = None
    entries: list[HistoryDisplayEntry]


# -- API bodies --


class CreateProjectRequest(CamelModel):
    title: Optional[str] = None


class RenameProjectRequest(CamelModel):
    title: str


class ProjectResponse(CamelModel):
    meta: ProjectMeta
    sources: list[SourceFile]
    pages: list[PageEntry]
    outline_tree: list[dict[str, Any]]
    history: HistoryResponse


class ImportResponse(CamelModel):
    source_id: str
    page_count: int
    page_ids: list[str]


class PageIdsRequest(CamelModel):
    page_ids: list[str]


class RotateRequest(CamelModel):
    page_ids: list[str]
    degrees: int


class ReorderRequest(CamelModel):
    order: list[str]  # every page id, in the new order


class ResizeRequest(CamelModel):
    targets: list[ResizeTarget]


class SplitRequest(CamelModel):
    index: int


class AddRedactionsRequest(CamelModel):
    redactions: list[RedactionMark]


class UpdateRedactionRequest(CamelModel):
    redaction: RedactionMark


class OutlineRequest(CamelModel):
    tree: list[OutlineNode]
    dirty: bool = True
    label: str = "Edit outline"


class JumpRequest(CamelModel):
    index: int


class GcResponse(CamelModel):
    deleted: list[str]


class StorageBreakdown(CamelModel):
    active_bytes: int = 0
    trash_bytes: int = 0
    cache_bytes: int = 0
    used_bytes: int = 0
