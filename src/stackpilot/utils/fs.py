"""Filesystem helpers: scoped temp files and atomic writes."""

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator, Union

from stackpilot.errors import WorkspacePermissionError


logger = logging.getLogger(__name__)


@contextlib.contextmanager
def scoped_tempfile(target: Union[str, Path], suffix: str = ".tmp") -> Iterator[Path]:
    """Yield a temp path next to ``target``; it is removed on every exit path.

    The temp file lives in the target directory so a later ``os.replace``
    stays on one filesystem.
    """
    target = Path(target)
    try:
        fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=suffix, dir=target.parent)
    except PermissionError as e:
        raise WorkspacePermissionError(f"Cannot create temp file in {target.parent}: {e}") from e
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


def write_text_synced(path: Union[str, Path], content: str):
    """Write and fsync."""
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(content)
        fh.flush()
        os.fsync(fh.fileno())


def atomic_write(path: Union[str, Path], content: str, mode: int = 0o644):
    """Write ``content`` to ``path`` via temp file + rename."""
    path = Path(path)
    try:
        with scoped_tempfile(path) as tmp:
            write_text_synced(tmp, content)
            os.chmod(tmp, mode)
            os.replace(tmp, path)
    except WorkspacePermissionError:
        raise
    except PermissionError as e:
        raise WorkspacePermissionError(f"Cannot write {path}: {e}") from e
    logger.debug(f"Wrote {path}")
