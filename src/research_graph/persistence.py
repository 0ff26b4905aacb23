"""JSON-file project persistence.

Each project is stored as ``<directory>/<project-id>.json``; the current
project pointer lives in ``<directory>/current.json``. Writes use the
temp file -> fsync -> os.replace pattern so a crash never leaves a
half-written project behind.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from research_graph.exceptions import PersistenceError, ProjectNotFoundError
from research_graph.state import (
    GraphState,
    NodeKind,
    NodeStatus,
    Project,
    utc_now,
)

if TYPE_CHECKING:
    from research_graph.graph import ResearchGraph

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_CURRENT_FILE = "current.json"
_REQUIRED_PROJECT_KEYS = ("id", "name", "createdAt", "updatedAt")

REPORT_INTERRUPTED = "Report unavailable. Please regenerate the report."
STAGE_INTERRUPTED = "Stage interrupted before completion. Please run it again."


def generate_project_id() -> str:
    return f"project-{uuid4().hex[:12]}"


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    fd_closed = False
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        fd_closed = True
        os.replace(tmp_path, str(path))
    except BaseException:
        if not fd_closed:
            os.close(fd)
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def normalize_interrupted(graph: GraphState) -> GraphState:
    """Move nodes left Pending/Loading by an abandoned stage to Failed."""
    restored = graph.model_copy(deep=True)
    for node in restored.nodes.values():
        if node.status in (NodeStatus.PENDING, NodeStatus.LOADING):
            node.status = NodeStatus.FAILED
            node.error = (
                REPORT_INTERRUPTED if node.kind is NodeKind.REPORT else STAGE_INTERRUPTED
            )
    return restored


def _is_project_record(item: Any) -> bool:
    return isinstance(item, dict) and all(item.get(key) for key in _REQUIRED_PROJECT_KEYS)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ProjectStore:
    """Durable storage for :class:`Project` snapshots.

    Attributes:
        directory: Folder holding one JSON file per project.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, project_id: str) -> Path:
        if not project_id or "/" in project_id or project_id.startswith("."):
            raise PersistenceError(f"Invalid project id: {project_id!r}")
        return self.directory / f"{project_id}.json"

    def _project_files(self) -> list[Path]:
        return [p for p in self.directory.glob("*.json") if p.name != _CURRENT_FILE]

    def _read(self, path: Path) -> Project:
        try:
            return Project.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            raise PersistenceError(f"Failed to read project file {path.name}") from exc

    # -- CRUD ---------------------------------------------------------------

    def load_project(self, project_id: str) -> Project:
        """Load a project, failing interrupted stages.

        Raises:
            ProjectNotFoundError: If no such project is stored.
            PersistenceError: If the file cannot be read or parsed.
        """
        path = self._path(project_id)
        if not path.exists():
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        project = self._read(path)
        project.graph = normalize_interrupted(project.graph)
        logger.info("project_loaded", project_id=project_id, nodes=len(project.graph.nodes))
        return project

    def save_project(self, project: Project) -> None:
        payload = project.model_dump_json(by_alias=True, indent=2).encode("utf-8")
        try:
            _atomic_write(self._path(project.id), payload)
        except OSError as exc:
            raise PersistenceError(f"Failed to save project {project.id}") from exc
        logger.info("project_saved", project_id=project.id, size_bytes=len(payload))

    def list_projects(self) -> list[Project]:
        """All stored projects, most recently updated first."""
        projects = [self._read(path) for path in self._project_files()]
        return sorted(projects, key=lambda p: p.updated_at, reverse=True)

    def delete_project(self, project_id: str) -> None:
        path = self._path(project_id)
        if not path.exists():
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        path.unlink()
        if self.current_project_id() == project_id:
            self.set_current_project(None)
        logger.info("project_deleted", project_id=project_id)

    def create_project(self, name: str, template: Project | None = None) -> Project:
        """Create an empty project, or clone *template* under a fresh id."""
        now = utc_now()
        graph = template.graph.model_copy(deep=True) if template else GraphState()
        project = Project(
            id=generate_project_id(),
            name=name,
            created_at=now,
            updated_at=now,
            graph=graph,
        )
        self.save_project(project)
        self.set_current_project(project.id)
        return project

    # -- current project pointer --------------------------------------------

    def current_project_id(self) -> str | None:
        path = self.directory / _CURRENT_FILE
        if not path.exists():
            return None
        try:
            value = json.loads(path.read_text()).get("currentProjectId")
        except (OSError, ValueError, AttributeError):
            logger.warning("current_project_pointer_unreadable")
            return None
        return value if isinstance(value, str) else None

    def set_current_project(self, project_id: str | None) -> None:
        data = json.dumps({"currentProjectId": project_id}).encode("utf-8")
        _atomic_write(self.directory / _CURRENT_FILE, data)

    # -- bulk export / import -----------------------------------------------

    def export_all(self) -> str:
        """Serialize every stored project as a JSON array."""
        projects = [p.model_dump(by_alias=True, mode="json") for p in self.list_projects()]
        return json.dumps(projects, indent=2)

    def import_all(self, text: str) -> bool:
        """Replace the stored projects with those in *text*.

        The payload must be a JSON array whose items all carry ``id``,
        ``name``, ``createdAt`` and ``updatedAt``. Nothing changes when
        validation fails.

        Imported projects are written before stale files are removed. If a
        write fails the previous files are put back and the error is raised.

        Returns:
            ``True`` on success, ``False`` if *text* was rejected.

        Raises:
            PersistenceError: If an imported project cannot be written.
        """
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning("project_import_rejected", reason="invalid json")
            return False
        if not isinstance(data, list) or not all(_is_project_record(i) for i in data):
            logger.warning("project_import_rejected", reason="invalid project format")
            return False
        try:
            projects = [Project.model_validate(item) for item in data]
        except ValidationError as exc:
            logger.warning("project_import_rejected", reason=str(exc))
            return False

        previous = {path: path.read_bytes() for path in self._project_files()}
        try:
            for project in projects:
                self.save_project(project)
        except PersistenceError:
            self._restore_files(previous)
            logger.error("project_import_failed", count=len(projects))
            raise

        imported = {self._path(p.id) for p in projects}
        for path in previous:
            if path not in imported:
                path.unlink()

        current = self.current_project_id()
        if current is not None and current not in {p.id for p in projects}:
            self.set_current_project(None)
        logger.info("projects_imported", count=len(projects))
        return True

    def _restore_files(self, previous: dict[Path, bytes]) -> None:
        for path in self._project_files():
            if path not in previous:
                path.unlink()
        for path, data in previous.items():
            _atomic_write(path, data)


# ---------------------------------------------------------------------------
# Debounced saving
# ---------------------------------------------------------------------------


class DebouncedSaver:
    """Coalesce frequent snapshot saves into one write per quiet period.

    Only the latest scheduled snapshot is written (last writer wins).
    A snapshot whose background write fails stays pending, so the next
    :meth:`flush` retries it and raises if the store is still failing.
    Must be used from within a running event loop.
    """

    def __init__(self, store: ProjectStore, delay: float = 1.0) -> None:
        self.store = store
        self.delay = delay
        self._pending: Project | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> Project | None:
        return self._pending

    def schedule(self, project: Project) -> None:
        self._pending = project
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._reap()
        self._task = asyncio.get_running_loop().create_task(self._save_later())

    def watch(self, graph: ResearchGraph, project: Project) -> None:
        """Schedule a save of *project* after every change to *graph*."""

        def _on_change(state: GraphState) -> None:
            self.schedule(
                project.model_copy(update={"graph": state, "updated_at": utc_now()})
            )

        graph.subscribe(_on_change)

    async def _save_later(self) -> None:
        await asyncio.sleep(self.delay)
        self._write_pending()

    def _write_pending(self) -> None:
        project, self._pending = self._pending, None
        if project is None:
            return
        try:
            self.store.save_project(project)
        except PersistenceError:
            if self._pending is None:
                self._pending = project
            raise

    def _reap(self) -> None:
        """Collect the outcome of a finished background save."""
        task, self._task = self._task, None
        if task is None or not task.done() or task.cancelled():
            return
        try:
            task.result()
        except PersistenceError as exc:
            logger.error("project_save_failed", error=str(exc))

    async def flush(self) -> None:
        """Write any pending snapshot now.

        Raises:
            PersistenceError: If the snapshot cannot be written.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._reap()
        self._write_pending()
