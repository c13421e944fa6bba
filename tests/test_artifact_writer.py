from __future__ import annotations

import openpyxl
import pytest

from analyzer_errors import IoWriteError
from artifact_writer import REPORT_HEADERS, Artifact, ArtifactWriter, ReportRow, write_report
from decrypt_behinder_payload import ContentKind


def _artifact(sequence=1, side="request", kind=ContentKind.BINARY, data=b"\xca\xfe\xba\xbe", **kw):
    return Artifact(sequence=sequence, exchange=sequence - 1, side=side, kind=kind, data=data, **kw)


def test_names_follow_sequence_side_and_kind():
    assert _artifact().filename == "0001-request.class"
    assert _artifact(data=b"\x00\x01").filename == "0001-request.bin"
    assert _artifact(12, "response", ContentKind.STRUCTURED_TEXT, b"{}").filename == "0012-response.json"
    assert _artifact(3, kind=ContentKind.PLAIN_TEXT, data=b"id").filename == "0003-request.txt"


def test_names_are_unique_for_a_run():
    artifacts = []
    for sequence in range(1, 6):
        artifacts.append(_artifact(sequence))
        artifacts.append(_artifact(sequence, "response", ContentKind.STRUCTURED_TEXT, b"{}"))
    names = [a.filename for a in artifacts]
    assert len(set(names)) == len(names) == 10


def test_writer_creates_directory_and_overwrites(tmp_path):
    outdir = tmp_path / "nested" / "out"
    writer = ArtifactWriter(outdir)
    path = writer.write(_artifact(data=b"\xca\xfe\xba\xbeold"))
    writer.write(_artifact(data=b"\xca\xfe\xba\xbenew"))
    assert path == outdir / "0001-request.class"
    assert path.read_bytes() == b"\xca\xfe\xba\xbenew"
    assert writer.written == [path, path]


def test_write_failure_is_reported_per_artifact(tmp_path):
    blocker = tmp_path / "out"
    blocker.write_text("a file where the directory should be")
    writer = ArtifactWriter(blocker)
    with pytest.raises(IoWriteError) as info:
        writer.write(_artifact(flow_label="a <-> b"))
    assert info.value.context["flow"] == "a <-> b"
    assert info.value.context["exchange"] == 0
    assert writer.written == []


def test_report_lists_every_row(tmp_path):
    rows = [
        ReportRow(1, 1700000000.5, "10.0.0.2:50123 <-> 10.0.0.1:80", 0, "request",
                  "aes-ecb/raw", "binary", "0001-request.class"),
        ReportRow(1, 1700000000.6, "10.0.0.2:50123 <-> 10.0.0.1:80", 0, "response",
                  "aes-ecb/raw", "structured", "0001-response.json", detail='{"status": "ok"}'),
        ReportRow(2, None, "10.0.0.2:50123 <-> 10.0.0.1:80", 1, "response", status="decrypt"),
    ]
    path = write_report(rows, tmp_path / "report.xlsx")

    sheet = openpyxl.load_workbook(path).active
    values = list(sheet.iter_rows(values_only=True))
    assert list(values[0]) == REPORT_HEADERS
    assert values[1][0] == 1
    assert values[1][7] == "0001-request.class"
    assert values[1][9] == "N/A"
    assert values[2][9] == '{"status": "ok"}'
    assert values[3][0] == 2
    assert values[3][1] == "N/A"
    assert values[3][8] == "decrypt"


def test_report_truncates_long_detail(tmp_path):
    row = ReportRow(1, None, "a <-> b", 0, "response", "aes-ecb/raw", "structured", "0001-response.json",
                    detail="x" * 40000)
    path = write_report([row], tmp_path / "report.xlsx")
    values = list(openpyxl.load_workbook(path).active.iter_rows(values_only=True))
    assert len(values[1][9]) == 32767
