import logging
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    id: str
    path: Path

    def file(self, name: str) -> Path:
        # uploaded names come from clients; keep only the final component
        return self.path / Path(name).name

    def subdir(self, name: str) -> Path:
        sub = self.path / name
        sub.mkdir(parents=True, exist_ok=True)
        return sub


@dataclass
class WorkspaceManager:
    """
    Hands out one isolated temp directory per pipeline run.

    Directories are created with mkdtemp under `root`, so two active
    workspaces can never share a path.
    """

    root: Path
    prefix: str = "ws_"
    _active: Dict[str, Workspace] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root)

    @property
    def active(self) -> Dict[str, Workspace]:
        return dict(self._active)

    def acquire(self) -> Workspace:
        self.root.mkdir(parents=True, exist_ok=True)
        ws_id = uuid.uuid4().hex
        path = Path(tempfile.mkdtemp(prefix=f"{self.prefix}{ws_id}_", dir=self.root))
        workspace = Workspace(id=ws_id, path=path)
        self._active[ws_id] = workspace
        logger.debug("Workspace acquired: %s", path)
        return workspace

    def release(self, workspace: Workspace) -> None:
        """Remove the workspace tree. Failures are logged, never raised."""
        self._active.pop(workspace.id, None)
        try:
            shutil.rmtree(workspace.path)
            logger.debug("Workspace released: %s", workspace.path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Failed to clean up workspace %s", workspace.path)

    @contextmanager
    def scope(self) -> Iterator[Workspace]:
        workspace = self.acquire()
        try:
            yield workspace
        finally:
            self.release(workspace)
