"""PDF source lifecycle: read an upload into a SourceFile, decode, render."""

import hashlib
import logging
import threading
import time
import uuid

import pymupdf

from .config import DEFAULT_RENDER_SCALE, MAX_UPLOAD_SIZE, SOURCE_COLORS
from .models import (
    DocumentMetadata,
    PageMetrics,
    PageReference,
    PdfOutlineNode,
    SourceFile,
)

logger = logging.getLogger(__name__)


def make_source_id(content: bytes) -> str:
    # Hash + random suffix so re-importing the same PDF doesn't collide with an edited copy
    content_hash = hashlib.sha256(content).hexdigest()[:12]
    return content_hash + uuid.uuid4().hex[:4]


def _toc_to_outline(toc: list) -> list[PdfOutlineNode]:
    """Nest a flat ``get_toc()`` list ([level, title, page], 1-based pages)."""
    roots: list[PdfOutlineNode] = []
    stack: list[tuple[int, PdfOutlineNode]] = []
    for level, title, page, *_ in toc:
        node = PdfOutlineNode(title=title, page_index=max(page - 1, 0))
        while stack and stack[-1][0] >= level:
            stack.pop()
        if stack:
            stack[-1][1].children.append(node)
        else:
            roots.append(node)
        stack.append((level, node))
    return roots


def _read_metadata(doc: pymupdf.Document) -> DocumentMetadata:
    meta = doc.metadata or {}
    keywords = [k.strip() for k in (meta.get("keywords") or "").split(",") if k.strip()]
    return DocumentMetadata(
        title=meta.get("title") or "",
        author=meta.get("author") or "",
        subject=meta.get("subject") or "",
        keywords=keywords,
    )


def read_pdf(content: bytes, filename: str, color_index: int = 0) -> tuple[SourceFile, list[PageReference]]:
    """Decode an uploaded PDF into source metadata and one page reference per page."""
    if len(content) > MAX_UPLOAD_SIZE:
        raise ValueError(f"File too large ({len(content)} bytes, max {MAX_UPLOAD_SIZE})")

    source_id = make_source_id(content)
    doc = pymupdf.open(stream=content, filetype="pdf")
    try:
        if len(doc) == 0:
            raise ValueError("PDF has no pages")
        metrics = [
            PageMetrics(width=page.rect.width, height=page.rect.height, rotation=page.rotation)
            for page in doc
        ]
        outline = _toc_to_outline(doc.get_toc(simple=True))
        metadata = _read_metadata(doc)
    finally:
        doc.close()

    source = SourceFile(
        id=source_id,
        filename=filename,
        page_count=len(metrics),
        file_size=len(content),
        added_at=int(time.time() * 1000),
        color=SOURCE_COLORS[color_index % len(SOURCE_COLORS)],
        page_meta_data=metrics,
        outline=outline or None,
        metadata=metadata,
    )
    pages = [
        PageReference(
            id=str(uuid.uuid4()),
            source_file_id=source_id,
            source_page_index=index,
            rotation=0,
            group_id=source_id,
        )
        for index in range(len(metrics))
    ]
    return source, pages


class DocumentLoader:
    """Resolves a source id to an open PyMuPDF document, with a decode cache.

    ``evict`` is registered with storage GC so collected blobs are dropped
    from the cache as well.
    """

    def __init__(self, read_blob):
        self._read_blob = read_blob  # source_id -> bytes
        self._cache: dict[str, pymupdf.Document] = {}
        self._lock = threading.Lock()

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._cache

    def open(self, source_id: str) -> pymupdf.Document:
        with self._lock:
            doc = self._cache.get(source_id)
            if doc is None:
                doc = pymupdf.open(stream=self._read_blob(source_id), filetype="pdf")
                self._cache[source_id] = doc
            return doc

    def evict(self, source_ids) -> None:
        with self._lock:
            for source_id in source_ids:
                doc = self._cache.pop(source_id, None)
                if doc is not None:
                    doc.close()
                    logger.debug("Evicted decoded source %s", source_id)

    def clear(self) -> None:
        with self._lock:
            for doc in self._cache.values():
                doc.close()
            self._cache.clear()

    def render_page(self, page: PageReference, scale: float = DEFAULT_RENDER_SCALE) -> bytes:
        """Render a page reference as PNG bytes, honoring its rotation."""
        doc = self.open(page.source_file_id)
        with self._lock:
            if page.source_page_index < 0 or page.source_page_index >= len(doc):
                raise IndexError(f"Page {page.source_page_index} out of range")
            pdf_page = doc[page.source_page_index]
            mat = pymupdf.Matrix(scale, scale)
            if page.rotation:
                mat.prerotate(page.rotation)
            pix = pdf_page.get_pixmap(matrix=mat)
            return pix.tobytes("png")
