"""Serialise a directory tree into an uncompressed tar stream."""

from __future__ import annotations

import os
import tarfile
import threading
from pathlib import Path
from typing import BinaryIO

from ocireplica.core.errors import CopyCancelledError


def tar_directory(
    fileobj: BinaryIO,
    root: Path,
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    """Write every file and directory under *root* to *fileobj* as a tar.

    Member names are relative to *root* and emitted in sorted order, so the
    same tree always produces the same member sequence.  Returns the number
    of regular files written.
    """
    root = Path(root)
    count = 0
    with tarfile.open(fileobj=fileobj, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            current = Path(dirpath)
            for name in dirnames:
                path = current / name
                tar.add(path, arcname=path.relative_to(root).as_posix(), recursive=False)
            for name in sorted(filenames):
                if cancel_event is not None and cancel_event.is_set():
                    raise CopyCancelledError("archive creation cancelled")
                path = current / name
                tar.add(path, arcname=path.relative_to(root).as_posix(), recursive=False)
                count += 1
    return count
