from __future__ import annotations

import gzip
import lzma
import os
import shutil
from pathlib import Path

from ops_logrotate.models.policy import Compression


def compressed_path(path: str, compression: Compression) -> str:
    return path + compression.suffix


def _open_out(path: str, compression: Compression):
    if compression is Compression.GZIP:
        return gzip.open(path, "wb")
    return lzma.open(path, "wb", preset=6)


def compress_file(path: str, compression: Compression) -> str:
    """Compress `path` next to itself and drop the original.

    Output goes to a `.tmp` sibling first and is renamed into place, so a
    crash never leaves a truncated `.gz`/`.xz` under a generation name. The
    source's mtime and mode carry over.
    """
    if compression is Compression.NONE:
        return path

    dst = compressed_path(path, compression)
    tmp = dst + ".tmp"
    try:
        with open(path, "rb") as f_in, _open_out(tmp, compression) as f_out:
            shutil.copyfileobj(f_in, f_out, 1024 * 1024)
        shutil.copystat(path, tmp)
        os.replace(tmp, dst)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    Path(path).unlink(missing_ok=True)
    return dst


def open_generation(path: str):
    """Open a generation for reading regardless of its compression."""
    if path.endswith(".gz"):
        return gzip.open(path, "rb")
    if path.endswith(".xz"):
        return lzma.open(path, "rb")
    return open(path, "rb")
