from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import shutil
import stat
import tempfile

from patchfix.observability import log_event, log_warning_event


LOGGER = logging.getLogger("patchfix.workspace")
WORKSPACE_PREFIX = "patch-merge-"
CLONE_DIR_NAME = "clone"


@contextmanager
def merge_workspace(root: Path | None = None) -> Iterator[Path]:
    """Yield a fresh empty directory that is removed on every exit path.

    Exceptions raised inside the block propagate unchanged; if removal then fails
    too, that failure is only logged.
    """
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=str(root) if root else None))
    log_event(LOGGER, "workspace_created", path=str(path))
    try:
        yield path
    except BaseException:
        _remove_after_failure(path)
        raise
    _remove_tree(path)
    log_event(LOGGER, "workspace_removed", path=str(path))


def prepare_clone_dir(workspace: Path) -> Path:
    """Create ``<workspace>/clone``, wipe it, and recreate it empty."""
    clone_path = workspace / CLONE_DIR_NAME
    clone_path.mkdir(parents=True, exist_ok=True)
    _remove_tree(clone_path)
    clone_path.mkdir(parents=True)
    return clone_path


def _remove_after_failure(path: Path) -> None:
    try:
        _remove_tree(path)
    except OSError as exc:
        log_warning_event(
            LOGGER,
            "workspace_remove_failed",
            path=str(path),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return
    log_event(LOGGER, "workspace_removed", path=str(path))


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except PermissionError:
        # git marks pack files read-only.
        for child in path.rglob("*"):
            os.chmod(child, stat.S_IRWXU)
        shutil.rmtree(path)
