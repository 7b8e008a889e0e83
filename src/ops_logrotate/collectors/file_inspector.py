from __future__ import annotations

import glob
import os
import re
import stat
from dataclasses import dataclass
from typing import Iterator

from ops_logrotate.errors import NotFoundError
from ops_logrotate.models.rotation import FileStat

TEMP_MARKER = ".ops_logrotate-"

_GENERATION_TAIL = re.compile(r"\.(\d+)(\.gz|\.xz)?$")


@dataclass(frozen=True)
class GenerationEntry:
    """A directory entry that parses as `<live>.<n>[.gz|.xz]`."""

    number: int
    path: str
    suffix: str
    size_bytes: int
    mod_time: float


class FileInspector:
    def resolve(self, path_pattern: str) -> Iterator[str]:
        """Yield absolute paths of regular files matching the pattern.

        Matching nothing is fine. Names that look like rotated generations or
        our own temp files are never treated as live files.
        """
        for cand in sorted(glob.iglob(os.path.expanduser(path_pattern))):
            name = os.path.basename(cand)
            if TEMP_MARKER in name or _GENERATION_TAIL.search(name) or name.endswith(".tmp"):
                continue
            try:
                st = os.stat(cand)
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                yield os.path.abspath(cand)

    def stat(self, path: str) -> FileStat:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            raise NotFoundError(path) from None
        return FileStat(
            size_bytes=int(st.st_size),
            mod_time=float(st.st_mtime),
            inode=int(st.st_ino),
            mode=stat.S_IMODE(st.st_mode),
            uid=int(getattr(st, "st_uid", -1)),
            gid=int(getattr(st, "st_gid", -1)),
        )

    def generation_entries(self, live_path: str) -> list[GenerationEntry]:
        """List `<live>.<n>[.gz|.xz]` siblings. Anything else is foreign."""
        d = os.path.dirname(live_path) or "."
        base = os.path.basename(live_path)
        rx = re.compile(re.escape(base) + r"\.([1-9]\d*)(\.gz|\.xz)?$")

        rows: list[GenerationEntry] = []
        try:
            names = os.listdir(d)
        except FileNotFoundError:
            return rows

        for name in names:
            m = rx.fullmatch(name)
            if not m:
                continue
            p = os.path.join(d, name)
            try:
                st = os.stat(p)
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            rows.append(
                GenerationEntry(
                    number=int(m.group(1)),
                    path=p,
                    suffix=m.group(2) or "",
                    size_bytes=int(st.st_size),
                    mod_time=float(st.st_mtime),
                )
            )
        rows.sort(key=lambda r: (r.number, r.suffix == ""))
        return rows
