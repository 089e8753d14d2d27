"""Shared fixtures: a small two-source document, a registry, and a PDF factory."""

import pymupdf
import pytest

from pagestack.executor import Executor
from pagestack.history import HistoryManager
from pagestack.models import PageMetrics, PageReference, SourceFile
from pagestack.registry import build_default_registry
from pagestack.state import DocumentState


def _make_source(source_id: str, filename: str, page_count: int) -> SourceFile:
    return SourceFile(
        id=source_id,
        filename=filename,
        page_count=page_count,
        file_size=1024,
        added_at=1_700_000_000_000,
        page_meta_data=[PageMetrics(width=612, height=792) for _ in range(page_count)],
    )


def _make_pages(source: SourceFile, prefix: str) -> list[PageReference]:
    return [
        PageReference(id=f"{prefix}{i}", source_file_id=source.id, source_page_index=i, group_id=source.id)
        for i in range(source.page_count)
    ]


@pytest.fixture
def make_source():
    return _make_source


@pytest.fixture
def make_pages():
    return _make_pages


@pytest.fixture
def source_a():
    return _make_source("srca", "a.pdf", 3)


@pytest.fixture
def source_b():
    return _make_source("srcb", "b.pdf", 2)


@pytest.fixture
def state(source_a, source_b):
    """Pages a0 a1 a2 b0 b1 from two sources."""
    doc = DocumentState()
    doc.add_source_file(source_a.model_copy(deep=True))
    doc.add_source_file(source_b.model_copy(deep=True))
    doc.add_pages(_make_pages(source_a, "a") + _make_pages(source_b, "b"))
    return doc


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def executor(state):
    return Executor(state)


@pytest.fixture
def history(executor, registry):
    return HistoryManager(executor, registry)


@pytest.fixture
def make_pdf():
    """Build an in-memory PDF with PyMuPDF."""

    def _make_pdf(pages: int = 3, width: float = 612, height: float = 792, toc=None, title: str = "") -> bytes:
        doc = pymupdf.open()
        for i in range(pages):
            page = doc.new_page(width=width, height=height)
            page.insert_text((72, 72), f"Page {i + 1}")
        if toc:
            doc.set_toc(toc)
        if title:
            doc.set_metadata({"title": title})
        data = doc.tobytes()
        doc.close()
        return data

    return _make_pdf
