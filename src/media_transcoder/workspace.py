"""Per-job temporary workspaces.

A workspace is a private temp directory holding the downloaded source and the
files FFmpeg produces. ``release()`` is idempotent and never raises, so it is
safe to call from ``finally`` blocks on every exit path.
"""

import logging
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import CleanupFailure
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


class Workspace:
    """Scoped local copy of a source object."""

    def __init__(self, directory: Path, local_path: Path):
        self.directory = directory
        self.local_path = local_path
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def path_for(self, filename: str) -> Path:
        return self.directory / filename

    def release(self) -> None:
        """Remove the directory tree; failures are logged, never raised."""
        with self._lock:
            if self._released:
                return
            self._released = True

        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            failure = CleanupFailure(str(self.directory), str(e))
            logger.warning(str(failure))


class WorkspaceManager:
    """Creates workspaces and downloads sources into them."""

    def __init__(self, storage: ObjectStorage, temp_root: Optional[str] = None):
        self.storage = storage
        self.temp_root = temp_root
        if temp_root:
            Path(temp_root).mkdir(parents=True, exist_ok=True)

    def acquire(self, source_key: str, prefix: str = "transcode-") -> Workspace:
        """Create a temp dir and download ``source_key`` into it.

        The directory is removed before re-raising if the download fails.
        """
        directory = Path(tempfile.mkdtemp(prefix=prefix, dir=self.temp_root))
        local_path = directory / ("source" + Path(source_key).suffix.lower())
        workspace = Workspace(directory, local_path)

        try:
            self.storage.download_to(source_key, local_path)
        except BaseException:
            workspace.release()
            raise

        logger.debug("Workspace acquired", extra={"workspace": str(directory)})
        return workspace

    @contextmanager
    def scoped(self, source_key: str, prefix: str = "transcode-") -> Iterator[Workspace]:
        workspace = self.acquire(source_key, prefix=prefix)
        try:
            yield workspace
        finally:
            workspace.release()
