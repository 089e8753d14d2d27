import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import Response

from .config import DEFAULT_RENDER_SCALE, MAX_UPLOAD_SIZE, STORAGE_DIR
from .models import (
    AddRedactionsRequest,
    CreateProjectRequest,
    GcResponse,
    HistoryResponse,
    ImportResponse,
    JumpRequest,
    OutlineRequest,
    PageIdsRequest,
    ProjectMeta,
    ProjectResponse,
    RenameProjectRequest,
    ReorderRequest,
    ResizeRequest,
    RotateRequest,
    SplitRequest,
    StorageBreakdown,
    UpdateRedactionRequest,
)
from .project import ProjectSession, Workspace
from .storage import FileStore, run_blocking

logger = logging.getLogger(__name__)

_workspace: Optional[Workspace] = None


def get_workspace() -> Workspace:
    global _workspace
    if _workspace is None:
        _workspace = Workspace(FileStore(STORAGE_DIR))
    return _workspace


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _workspace is not None:
        await _workspace.flush()
        _workspace.shutdown()


app = FastAPI(title="PageStack", lifespan=lifespan)


@contextmanager
def _http_errors():
    """Map service exceptions onto HTTP status codes."""
    try:
        yield
    except ValueError as e:
        raise HTTPException(400, str(e))
    except KeyError as e:
        raise HTTPException(404, e.args[0] if e.args else "Not found")
    except FileNotFoundError as e:
        raise HTTPException(404, str(e))
    except IndexError as e:
        raise HTTPException(404, str(e))


async def _session(workspace: Workspace, project_id: str) -> ProjectSession:
    with _http_errors():
        return await run_blocking(workspace.open_project, project_id)


# -- Projects --


@app.post("/api/projects", response_model=ProjectMeta)
async def create_project(req: CreateProjectRequest, workspace: Workspace = Depends(get_workspace)):
    session = await run_blocking(workspace.create_project, req.title)
    return session.meta


@app.get("/api/projects", response_model=list[ProjectMeta])
async def list_projects(include_trashed: bool = False, workspace: Workspace = Depends(get_workspace)):
    return await run_blocking(workspace.list_projects, include_trashed)


@app.get("/api/projects/{project_id}", response_model=ProjectResponse)
async def open_project(project_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    return session.describe()


@app.patch("/api/projects/{project_id}", response_model=ProjectMeta)
async def rename_project(project_id: str, req: RenameProjectRequest, workspace: Workspace = Depends(get_workspace)):
    with _http_errors():
        return await run_blocking(workspace.rename_project, project_id, req.title)


@app.post("/api/projects/{project_id}/save", response_model=ProjectMeta)
async def save_project(project_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        await session.save_async()
    return session.meta


@app.post("/api/projects/{project_id}/trash", response_model=ProjectMeta)
async def trash_project(project_id: str, workspace: Workspace = Depends(get_workspace)):
    with _http_errors():
        return await run_blocking(workspace.trash_project, project_id)


@app.post("/api/projects/{project_id}/restore", response_model=ProjectMeta)
async def restore_project(project_id: str, workspace: Workspace = Depends(get_workspace)):
    with _http_errors():
        return await run_blocking(workspace.restore_project, project_id)


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, workspace: Workspace = Depends(get_workspace)):
    with _http_errors():
        await run_blocking(workspace.delete_project, project_id)
    return {"status": "ok"}


@app.post("/api/trash/empty", response_model=GcResponse)
async def empty_trash(workspace: Workspace = Depends(get_workspace)):
    deleted = await run_blocking(workspace.empty_trash)
    return GcResponse(deleted=deleted)


# -- Sources --


@app.post("/api/projects/{project_id}/sources", response_model=ImportResponse)
async def upload_pdf(project_id: str, file: UploadFile = File(...), workspace: Workspace = Depends(get_workspace)):
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(400, "Only PDF files are accepted")
    content = await file.read()
    if len(content) == 0:
        raise HTTPException(400, "Empty file")
    if len(content) > MAX_UPLOAD_SIZE:
        raise HTTPException(400, f"File too large (max {MAX_UPLOAD_SIZE // 1024 // 1024} MB)")

    session = await _session(workspace, project_id)
    try:
        source, pages = await run_blocking(session.load_pdf, content, file.filename)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.warning("Rejected upload %r: %s", file.filename, e)
        raise HTTPException(400, f"Invalid PDF: {e}")
    session.add_source_pages(source, pages)
    return ImportResponse(source_id=source.id, page_count=len(pages), page_ids=[p.id for p in pages])


@app.delete("/api/projects/{project_id}/sources/{source_id}", response_model=ProjectResponse)
async def remove_source(project_id: str, source_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.remove_source(source_id)
    return session.describe()


# -- Pages --


@app.post("/api/projects/{project_id}/pages/delete", response_model=ProjectResponse)
async def delete_pages(project_id: str, req: PageIdsRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.delete_pages(req.page_ids)
    return session.describe()


@app.post("/api/projects/{project_id}/pages/duplicate", response_model=ProjectResponse)
async def duplicate_pages(project_id: str, req: PageIdsRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.duplicate_pages(req.page_ids)
    return session.describe()


@app.post("/api/projects/{project_id}/pages/rotate", response_model=ProjectResponse)
async def rotate_pages(project_id: str, req: RotateRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.rotate_pages(req.page_ids, req.degrees)
    return session.describe()


@app.post("/api/projects/{project_id}/pages/reorder", response_model=ProjectResponse)
async def reorder_pages(project_id: str, req: ReorderRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.reorder_pages(req.order)
    return session.describe()


@app.post("/api/projects/{project_id}/pages/resize", response_model=ProjectResponse)
async def resize_pages(project_id: str, req: ResizeRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.resize_pages(req.targets)
    return session.describe()


@app.post("/api/projects/{project_id}/pages/split", response_model=ProjectResponse)
async def split_pages(project_id: str, req: SplitRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.split_at(req.index)
    return session.describe()


@app.get("/api/projects/{project_id}/pages/{page_id}/image")
async def get_page_image(
    project_id: str,
    page_id: str,
    scale: float = DEFAULT_RENDER_SCALE,
    workspace: Workspace = Depends(get_workspace),
):
    if scale <= 0 or scale > 8:
        raise HTTPException(400, "Scale must be in (0, 8]")
    with _http_errors():
        png = await run_blocking(workspace.render_page, project_id, page_id, scale)
    return Response(content=png, media_type="image/png")


# -- Redactions --


@app.post("/api/projects/{project_id}/pages/{page_id}/redactions", response_model=ProjectResponse)
async def add_redactions(
    project_id: str, page_id: str, req: AddRedactionsRequest, workspace: Workspace = Depends(get_workspace)
):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.add_redactions(page_id, req.redactions)
    return session.describe()


@app.put("/api/projects/{project_id}/pages/{page_id}/redactions/{redaction_id}", response_model=ProjectResponse)
async def update_redaction(
    project_id: str,
    page_id: str,
    redaction_id: str,
    req: UpdateRedactionRequest,
    workspace: Workspace = Depends(get_workspace),
):
    if req.redaction.id != redaction_id:
        raise HTTPException(400, "Redaction id does not match the URL")
    session = await _session(workspace, project_id)
    with _http_errors():
        session.update_redaction(page_id, req.redaction)
    return session.describe()


@app.delete("/api/projects/{project_id}/pages/{page_id}/redactions/{redaction_id}", response_model=ProjectResponse)
async def delete_redaction(
    project_id: str, page_id: str, redaction_id: str, workspace: Workspace = Depends(get_workspace)
):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.delete_redaction(page_id, redaction_id)
    return session.describe()


# -- Outline --


@app.put("/api/projects/{project_id}/outline", response_model=ProjectResponse)
async def update_outline(project_id: str, req: OutlineRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    tree = [node.model_dump(by_alias=True, mode="json") for node in req.tree]
    with _http_errors():
        session.update_outline(tree, req.dirty, req.label)
    return session.describe()


# -- History --


@app.get("/api/projects/{project_id}/history", response_model=HistoryResponse)
async def get_history(project_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    return session.history.describe()


@app.post("/api/projects/{project_id}/undo", response_model=HistoryResponse)
async def undo(project_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.history.undo()
    return session.history.describe()


@app.post("/api/projects/{project_id}/redo", response_model=HistoryResponse)
async def redo(project_id: str, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.history.redo()
    return session.history.describe()


@app.post("/api/projects/{project_id}/jump", response_model=HistoryResponse)
async def jump(project_id: str, req: JumpRequest, workspace: Workspace = Depends(get_workspace)):
    session = await _session(workspace, project_id)
    with _http_errors():
        session.history.jump_to(req.index)
    return session.history.describe()


# -- Storage --


@app.post("/api/gc", response_model=GcResponse)
async def collect_garbage(workspace: Workspace = Depends(get_workspace)):
    with _http_errors():
        deleted = await workspace.collect_garbage()
    return GcResponse(deleted=deleted)


@app.get("/api/storage", response_model=StorageBreakdown)
async def get_storage(workspace: Workspace = Depends(get_workspace)):
    return await run_blocking(workspace.storage_breakdown)
