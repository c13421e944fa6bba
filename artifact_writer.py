# -*- coding: utf-8 -*-

"""Writes recovered artifacts and the Excel summary report."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import openpyxl

from analyzer_errors import IoWriteError
from decrypt_behinder_payload import ContentKind, sniff_extension

log = logging.getLogger(__name__)

REPORT_HEADERS = ['序号', '时间戳', 'TCP流', '交换', '方向', '解密方式', '类型', '文件', '状态', '解码内容']

# Excel refuses longer cell values
CELL_LIMIT = 32767


@dataclass(frozen=True)
class Artifact:
    sequence: int
    exchange: int
    side: str
    kind: ContentKind
    data: bytes
    codec: str = ""
    flow_label: str = ""

    @property
    def filename(self) -> str:
        stem = f"{self.sequence:04d}-{self.side}"
        if self.kind is ContentKind.STRUCTURED_TEXT:
            return stem + ".json"
        if self.kind is ContentKind.PLAIN_TEXT:
            return stem + ".txt"
        return stem + (sniff_extension(self.data) or ".bin")


class ArtifactWriter:
    """Persists artifacts into one output directory."""

    def __init__(self, outdir):
        self.outdir = Path(outdir)
        self.written = []

    def write(self, artifact: Artifact) -> Path:
        path = self.outdir / artifact.filename
        try:
            self.outdir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(artifact.data)
        except OSError as e:
            raise IoWriteError(str(e), {"file": path, "flow": artifact.flow_label,
                                        "exchange": artifact.exchange}) from e
        log.info(f"[+] {path.name} ({artifact.kind.value}, {len(artifact.data)} bytes, {artifact.codec or 'n/a'})")
        self.written.append(path)
        return path


@dataclass
class ReportRow:
    sequence: Optional[int]
    timestamp: Optional[float]
    flow_label: str
    exchange: int
    side: str
    codec: str = ""
    kind: str = ""
    filename: str = ""
    status: str = "ok"
    detail: str = ""


def write_report(rows, output_path):
    """Writes one row per exchange side to an Excel workbook."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Behinder Analysis"
    sheet.append(REPORT_HEADERS)

    for row in rows:
        sheet.append([
            row.sequence if row.sequence is not None else 'N/A',
            row.timestamp if row.timestamp is not None else 'N/A',
            row.flow_label,
            row.exchange,
            row.side,
            row.codec or 'N/A',
            row.kind or 'N/A',
            row.filename or 'N/A',
            row.status,
            row.detail[:CELL_LIMIT] or 'N/A',
        ])

    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)
    except OSError as e:
        raise IoWriteError(str(e), {"file": output_path}) from e
    return output_path
