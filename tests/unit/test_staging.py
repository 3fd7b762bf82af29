"""Unit tests for appointment_etl.staging (file store + readers)."""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from openpyxl import Workbook

from appointment_etl.shared import StagedFileNotFound, UploadRejectedError
from appointment_etl.staging import StagedFileStore, iter_chunks, iter_rows


CSV_TEXT = (
    "\ufeffPatient Name,Date of Service,Status\r\n"
    "Jane Doe,02/14/2026,Scheduled\r\n"
    ",,\r\n"
    "John Roe,02/15/2026,Cancelled\r\n"
)


class TestStagedFileStore:
    def test_stage_and_resolve(self, tmp_path: Path):
        store = StagedFileStore(tmp_path / "staging")
        handle = store.stage("Export.CSV", io.BytesIO(b"a,b\n1,2\n"))
        assert handle.endswith(".csv")
        assert store.exists(handle)
        assert store.path_for(handle).read_bytes() == b"a,b\n1,2\n"

    def test_unsupported_extension(self, tmp_path: Path):
        store = StagedFileStore(tmp_path)
        with pytest.raises(UploadRejectedError, match="Unsupported"):
            store.stage("export.pdf", io.BytesIO(b"%PDF"))

    def test_oversized_upload_removed(self, tmp_path: Path):
        store = StagedFileStore(tmp_path, max_bytes=10)
        with pytest.raises(UploadRejectedError, match="limit"):
            store.stage("big.csv", io.BytesIO(b"x" * 11))
        assert list(tmp_path.iterdir()) == []

    def test_exact_limit_accepted(self, tmp_path: Path):
        store = StagedFileStore(tmp_path, max_bytes=10)
        handle = store.stage("ok.csv", io.BytesIO(b"x" * 10))
        assert store.exists(handle)

    @pytest.mark.parametrize("handle", [None, "", "../etc/passwd", "abc.csv"])
    def test_bad_handle(self, tmp_path: Path, handle):
        store = StagedFileStore(tmp_path)
        with pytest.raises(StagedFileNotFound):
            store.path_for(handle)
        assert store.exists(handle) is False

    def test_release_once(self, tmp_path: Path):
        store = StagedFileStore(tmp_path)
        handle = store.stage("a.csv", io.BytesIO(b"a\n"))
        assert store.release(handle) is True
        assert store.release(handle) is False
        assert not store.exists(handle)


class TestReaders:
    def test_csv_skips_blank_rows_and_bom(self, tmp_path: Path):
        path = tmp_path / "export.csv"
        path.write_bytes(CSV_TEXT.encode("utf-8"))
        rows = list(iter_rows(path))
        assert rows == [
            ("Patient Name", "Date of Service", "Status"),
            ("Jane Doe", "02/14/2026", "Scheduled"),
            ("John Roe", "02/15/2026", "Cancelled"),
        ]

    def test_xlsx_first_sheet(self, tmp_path: Path):
        path = tmp_path / "export.xlsx"
        wb = Workbook()
        ws = wb.active
        ws.append(["Patient Name", "Date of Service", "Charges"])
        ws.append(["Jane Doe", 45702, 12.5])
        ws.append([None, None, None])
        ws.append(["John Roe", "02/15/2026", None])
        wb.save(path)

        rows = list(iter_rows(path))
        assert rows[0] == ("Patient Name", "Date of Service", "Charges")
        assert rows[1] == ("Jane Doe", 45702, 12.5)
        assert rows[2][0] == "John Roe"
        assert len(rows) == 3

    def test_unsupported_reader(self, tmp_path: Path):
        path = tmp_path / "export.txt"
        path.write_text("x")
        with pytest.raises(UploadRejectedError):
            list(iter_rows(path))


class TestIterChunks:
    def test_bounded_chunks(self):
        chunks = list(iter_chunks(((i,) for i in range(5)), 2))
        assert [len(c) for c in chunks] == [2, 2, 1]

    def test_empty(self):
        assert list(iter_chunks(iter(()), 3)) == []

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            list(iter_chunks([(1,)], 0))
