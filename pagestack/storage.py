"""Key-value persistence for project records and source blobs.

Stores are synchronous; async callers go through :func:`run_blocking` so
disk I/O never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import json
import re
from functools import partial
from pathlib import Path
from typing import Optional, Protocol

from .models import ProjectMeta, ProjectState, SourceFile

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_id(record_id: str) -> None:
    """Reject ids that could escape the storage directory (path traversal guard)."""
    if not isinstance(record_id, str) or not _ID_RE.match(record_id):
        raise ValueError(f"Invalid record id: {record_id!r}")


async def run_blocking(fn, *args, **kwargs):
    """Run a blocking function in a thread so it doesn't stall the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


class ProjectStore(Protocol):
    def get_meta(self, project_id: str) -> Optional[ProjectMeta]: ...
    def put_meta(self, meta: ProjectMeta) -> None: ...
    def delete_meta(self, project_id: str) -> None: ...
    def list_meta(self) -> list[ProjectMeta]: ...

    def get_state(self, project_id: str) -> Optional[ProjectState]: ...
    def put_state(self, state: ProjectState) -> None: ...
    def delete_state(self, project_id: str) -> None: ...
    def list_states(self) -> list[ProjectState]: ...

    def put_source(self, source: SourceFile, data: bytes) -> None: ...
    def get_source(self, source_id: str) -> Optional[SourceFile]: ...
    def get_source_data(self, source_id: str) -> bytes: ...
    def source_size(self, source_id: str) -> int: ...
    def list_source_keys(self) -> list[str]: ...
    def delete_sources(self, source_ids: list[str]) -> None: ...


class MemoryStore:
    """Process-local store; records are copied in and out."""

    def __init__(self) -> None:
        self.meta: dict[str, ProjectMeta] = {}
        self.states: dict[str, ProjectState] = {}
        self.sources: dict[str, SourceFile] = {}
        self.blobs: dict[str, bytes] = {}

    def get_meta(self, project_id: str) -> Optional[ProjectMeta]:
        meta = self.meta.get(project_id)
        return meta.model_copy(deep=True) if meta else None

    def put_meta(self, meta: ProjectMeta) -> None:
        self.meta[meta.id] = meta.model_copy(deep=True)

    def delete_meta(self, project_id: str) -> None:
        self.meta.pop(project_id, None)

    def list_meta(self) -> list[ProjectMeta]:
        return [m.model_copy(deep=True) for m in self.meta.values()]

    def get_state(self, project_id: str) -> Optional[ProjectState]:
        state = self.states.get(project_id)
        return state.model_copy(deep=True) if state else None

    def put_state(self, state: ProjectState) -> None:
        self.states[state.id] = state.model_copy(deep=True)

    def delete_state(self, project_id: str) -> None:
        self.states.pop(project_id, None)

    def list_states(self) -> list[ProjectState]:
        return [s.model_copy(deep=True) for s in self.states.values()]

    def put_source(self, source: SourceFile, data: bytes) -> None:
        self.sources[source.id] = source.model_copy(deep=True)
        self.blobs[source.id] = bytes(data)

    def get_source(self, source_id: str) -> Optional[SourceFile]:
        source = self.sources.get(source_id)
        return source.model_copy(deep=True) if source else None

    def get_source_data(self, source_id: str) -> bytes:
        if source_id not in self.blobs:
            raise FileNotFoundError(f"Source {source_id} not found")
        return self.blobs[source_id]

    def source_size(self, source_id: str) -> int:
        return len(self.blobs.get(source_id, b""))

    def list_source_keys(self) -> list[str]:
        return list(self.blobs)

    def delete_sources(self, source_ids: list[str]) -> None:
        for source_id in source_ids:
            self.sources.pop(source_id, None)
            self.blobs.pop(source_id, None)


class FileStore:
    """JSON records and PDF blobs under one root directory.

    Layout: ``projects/<id>.json``, ``states/<id>.json``,
    ``files/<id>.pdf`` plus ``files/<id>.json`` for source metadata.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.projects_dir = self.root / "projects"
        self.states_dir = self.root / "states"
        self.files_dir = self.root / "files"
        for directory in (self.projects_dir, self.states_dir, self.files_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def _path(self, directory: Path, record_id: str, suffix: str) -> Path:
        validate_id(record_id)
        return directory / f"{record_id}{suffix}"

    @staticmethod
    def _write_json(path: Path, data: dict) -> None:
        # Atomic replace
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _read_json(path: Path) -> Optional[dict]:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    # -- Project meta --

    def get_meta(self, project_id: str) -> Optional[ProjectMeta]:
        data = self._read_json(self._path(self.projects_dir, project_id, ".json"))
        return ProjectMeta.model_validate(data) if data is not None else None

    def put_meta(self, meta: ProjectMeta) -> None:
        self._write_json(self._path(self.projects_dir, meta.id, ".json"), meta.model_dump(by_alias=True, mode="json"))

    def delete_meta(self, project_id: str) -> None:
        self._path(self.projects_dir, project_id, ".json").unlink(missing_ok=True)

    def list_meta(self) -> list[ProjectMeta]:
        return [ProjectMeta.model_validate(self._read_json(p)) for p in sorted(self.projects_dir.glob("*.json"))]

    # -- Project state --

    def get_state(self, project_id: str) -> Optional[ProjectState]:
        data = self._read_json(self._path(self.states_dir, project_id, ".json"))
        return ProjectState.model_validate(data) if data is not None else None

    def put_state(self, state: ProjectState) -> None:
        self._write_json(self._path(self.states_dir, state.id, ".json"), state.model_dump(by_alias=True, mode="json"))

    def delete_state(self, project_id: str) -> None:
        self._path(self.states_dir, project_id, ".json").unlink(missing_ok=True)

    def list_states(self) -> list[ProjectState]:
        return [ProjectState.model_validate(self._read_json(p)) for p in sorted(self.states_dir.glob("*.json"))]

    # -- Sources --

    def put_source(self, source: SourceFile, data: bytes) -> None:
        self._path(self.files_dir, source.id, ".pdf").write_bytes(data)
        self._write_json(self._path(self.files_dir, source.id, ".json"), source.model_dump(by_alias=True, mode="json"))

    def get_source(self, source_id: str) -> Optional[SourceFile]:
        data = self._read_json(self._path(self.files_dir, source_id, ".json"))
        return SourceFile.model_validate(data) if data is not None else None

    def get_source_data(self, source_id: str) -> bytes:
        path = self._path(self.files_dir, source_id, ".pdf")
        if not path.exists():
            raise FileNotFoundError(f"Source {source_id} not found")
        return path.read_bytes()

    def source_size(self, source_id: str) -> int:
        path = self._path(self.files_dir, source_id, ".pdf")
        return path.stat().st_size if path.exists() else 0

    def list_source_keys(self) -> list[str]:
        return sorted(p.stem for p in self.files_dir.glob("*.pdf"))

    def delete_sources(self, source_ids: list[str]) -> None:
        for source_id in source_ids:
            self._path(self.files_dir, source_id, ".pdf").unlink(missing_ok=True)
            self._path(self.files_dir, source_id, ".json").unlink(missing_ok=True)
