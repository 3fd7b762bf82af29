"""appointment_etl.staging

Staged-file store and streaming readers for uploaded exports.

Uploads are written under a staging directory with an opaque handle
("<hex>.csv" / "<hex>.xlsx") so a preview can be confirmed later.  Readers
yield one row at a time; iter_chunks groups them into bounded lists so a
50k-row export never sits in memory as a whole.
"""

from __future__ import annotations

import csv
import logging
import re
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Iterable, Iterator

from openpyxl import load_workbook

from appointment_etl.shared import StagedFileNotFound, UploadRejectedError

log = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")
DEFAULT_MAX_BYTES = 50 * 1024 * 1024

_HANDLE_RE = re.compile(r"^[0-9a-f]{32}\.(csv|xlsx)$")
_COPY_BUFSIZE = 1024 * 1024


# ---------------------------------------------------------------------------
# StagedFileStore
# ---------------------------------------------------------------------------

class StagedFileStore:
    """Uploads parked on local disk between preview and confirm."""

    def __init__(self, root: Path, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._root = Path(root)
        self._max_bytes = max_bytes

    @property
    def root(self) -> Path:
        return self._root

    def stage(self, filename: str, stream: BinaryIO) -> str:
        """Copy an upload stream into the store and return its handle.

        Raises UploadRejectedError for an unsupported extension or when the
        stream exceeds max_bytes (the partial file is removed).
        """
        ext = Path(filename).suffix.lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise UploadRejectedError(
                f"Unsupported file type '{ext or filename}'. "
                f"Expected one of {', '.join(SUPPORTED_EXTENSIONS)}."
            )
        self._root.mkdir(parents=True, exist_ok=True)
        handle = f"{uuid.uuid4().hex}{ext}"
        dest = self._root / handle
        written = 0
        with open(dest, "wb") as out:
            while True:
                buf = stream.read(_COPY_BUFSIZE)
                if not buf:
                    break
                written += len(buf)
                if written > self._max_bytes:
                    break
                out.write(buf)
        if written > self._max_bytes:
            dest.unlink(missing_ok=True)
            raise UploadRejectedError(
                f"Upload exceeds the {self._max_bytes // (1024 * 1024)} MiB limit."
            )
        log.info("Staged upload %s as %s (%d bytes)", filename, handle, written)
        return handle

    def path_for(self, handle: str | None) -> Path:
        if not handle or not _HANDLE_RE.match(handle):
            raise StagedFileNotFound(f"Unknown staged file handle: {handle!r}")
        path = self._root / handle
        if not path.is_file():
            raise StagedFileNotFound(f"Staged file no longer exists: {handle}")
        return path

    def exists(self, handle: str | None) -> bool:
        try:
            self.path_for(handle)
        except StagedFileNotFound:
            return False
        return True

    def release(self, handle: str | None) -> bool:
        """Delete a staged file.  Returns False if it was already gone."""
        if not handle or not _HANDLE_RE.match(handle):
            return False
        path = self._root / handle
        if not path.exists():
            return False
        path.unlink()
        log.info("Released staged file %s", handle)
        return True


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _is_blank(cells: Iterable[Any]) -> bool:
    return all(c is None or (isinstance(c, str) and not c.strip()) for c in cells)


def _iter_csv(path: Path) -> Iterator[tuple[Any, ...]]:
    with open(path, newline="", encoding="utf-8-sig") as fh:
        for cells in csv.reader(fh):
            yield tuple(cells)


def _iter_xlsx(path: Path) -> Iterator[tuple[Any, ...]]:
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        for cells in ws.iter_rows(values_only=True):
            yield tuple(cells)
    finally:
        wb.close()


def iter_rows(path: Path) -> Iterator[tuple[Any, ...]]:
    """Yield every non-blank row of a CSV/XLSX file, header row included."""
    ext = path.suffix.lower()
    if ext == ".csv":
        source = _iter_csv(path)
    elif ext == ".xlsx":
        source = _iter_xlsx(path)
    else:
        raise UploadRejectedError(f"Unsupported file type '{ext}'.")
    for cells in source:
        if not _is_blank(cells):
            yield cells


def iter_chunks(
    rows: Iterable[tuple[Any, ...]], size: int
) -> Iterator[list[tuple[Any, ...]]]:
    """Group rows into lists of at most size rows."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    chunk: list[tuple[Any, ...]] = []
    for row in rows:
        chunk.append(row)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk
