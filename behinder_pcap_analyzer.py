#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from analyzer_errors import DecryptError, IoWriteError
from artifact_writer import Artifact, ArtifactWriter, ReportRow, write_report
from decrypt_behinder_payload import ContentKind, Decrypted, Decryptor, discover_keys, render_control_message
from http_demux import Exchange, HttpMessage, demultiplex
from pcap_loader import load
from tcp_reassembly import Flow, reassemble

log = logging.getLogger(__name__)

REPORT_NAME = "report.xlsx"


@dataclass
class AnalyzerConfig:
    input_path: Path
    outdir: Path = Path("behinder")
    key: Optional[str] = None
    backend: object = "tshark"
    jobs: int = 1
    report: bool = True
    keep_unknown: bool = False


@dataclass
class RunSummary:
    key: Optional[str] = None
    flows: int = 0
    flows_skipped: int = 0
    messages_skipped: int = 0
    exchanges: int = 0
    recovered: int = 0
    failed: int = 0
    artifacts: List[Path] = field(default_factory=list)
    write_failures: int = 0
    report_path: Optional[Path] = None


@dataclass
class _Side:
    flow: Flow
    exchange: Exchange
    message: HttpMessage
    result: Optional[Decrypted] = None
    error: Optional[DecryptError] = None

    @property
    def name(self) -> str:
        return "request" if self.message.is_request else "response"


@dataclass
class _FlowResult:
    flow: Flow
    exchanges: List[Exchange]
    parse_errors: list
    sides: List[_Side] = field(default_factory=list)


class NoKeyError(Exception):
    """No key was given and none could be recovered from the traffic."""


# --- Per flow work ---

def demultiplex_flow(flow: Flow) -> _FlowResult:
    exchanges, errors = demultiplex(flow)
    for error in errors:
        log.warning(f"[!] Skipping HTTP message: {error.describe()}")
    log.debug(f"[-] {flow.label}: {len(exchanges)} exchange(s)")
    return _FlowResult(flow, exchanges, errors)


def _bodies(result: _FlowResult):
    for exchange in result.exchanges:
        for message in (exchange.request, exchange.response):
            if message is not None and message.body:
                yield exchange, message


def decrypt_flow(result: _FlowResult, decryptor: Decryptor) -> _FlowResult:
    """Decrypt every non-empty body of one flow; failures stay with their side."""
    sides = []
    for exchange, message in _bodies(result):
        side = _Side(result.flow, exchange, message)
        context = {"flow": result.flow.label, "exchange": exchange.index, "side": side.name}
        try:
            side.result = decryptor.decrypt(message.body, context)
        except DecryptError as e:
            e.context.update(context)
            side.error = e
            log.warning(f"[!] Skipping exchange body: {e.describe()}")
        sides.append(side)
    result.sides = sides
    return result


def _map(func, items, jobs):
    if jobs > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            return list(executor.map(func, items))
    return [func(item) for item in items]


# --- Key selection ---

def select_key(results: List[_FlowResult], keep_unknown=False) -> str:
    """Pick the first key literal seen in the traffic that decrypts a body."""
    candidates = discover_keys(message.body for r in results for _, message in _bodies(r))
    log.info(f"[*] Key candidates found in traffic: {candidates or 'none'}")
    for candidate in candidates:
        decryptor = Decryptor(candidate, keep_unknown=keep_unknown)
        for result in results:
            for _, message in _bodies(result):
                try:
                    decryptor.decrypt(message.body)
                except DecryptError:
                    continue
                log.info(f"[+] Key '{candidate}' decrypts traffic")
                return candidate
    raise NoKeyError("No key given and none of the candidates in the traffic decrypts it.")


# --- Output ---

def _capture_order(results: List[_FlowResult]):
    """Every exchange of every flow with its sides, in capture order."""
    entries = []
    for result in results:
        sides = {}
        for side in result.sides:
            sides.setdefault(side.exchange.index, []).append(side)
        for exchange in result.exchanges:
            group = sorted(sides.get(exchange.index, []), key=lambda s: 0 if s.message.is_request else 1)
            entries.append((result.flow, exchange, group))
    entries.sort(key=lambda e: (e[1].frame, e[0].first_index, e[1].index))
    return entries


def _detail(decrypted: Decrypted) -> str:
    if decrypted.kind is not ContentKind.STRUCTURED_TEXT:
        return ""
    return render_control_message(decrypted.plaintext).decode("utf-8")


def write_artifacts(results: List[_FlowResult], outdir, summary: RunSummary) -> List[ReportRow]:
    """Write one file per decrypted exchange side.

    Sequence numbers count every exchange in capture order, so a side that
    fails to decrypt leaves a hole instead of renumbering later files.
    """
    writer = ArtifactWriter(outdir)
    rows = []
    for sequence, (flow, exchange, sides) in enumerate(_capture_order(results), 1):
        for side in sides:
            row = ReportRow(sequence, side.message.timestamp, flow.label, exchange.index, side.name)
            rows.append(row)
            if side.result is None:
                row.status = side.error.kind
                continue
            decrypted = side.result
            artifact = Artifact(sequence=sequence, exchange=exchange.index, side=side.name, kind=decrypted.kind,
                                data=decrypted.plaintext, codec=decrypted.codec, flow_label=flow.label)
            row.codec, row.kind, row.detail = decrypted.codec, decrypted.kind.value, _detail(decrypted)
            try:
                writer.write(artifact)
            except IoWriteError as e:
                summary.write_failures += 1
                row.status = e.kind
                log.warning(f"[!] Could not write artifact: {e.describe()}")
            else:
                row.filename = artifact.filename
    summary.artifacts = writer.written
    return rows


# --- Pipeline ---

def process_behinder_pcap(config: AnalyzerConfig) -> RunSummary:
    """Runs the whole pipeline. Only CaptureReadError (and NoKeyError) escape."""
    summary = RunSummary()
    packets = load(config.input_path, config.backend)

    flows, failures = reassemble(packets)
    for error in failures:
        log.warning(f"[!] Skipping stream: {error.describe()}")
    summary.flows = len(flows)
    summary.flows_skipped = len(failures)
    log.info(f"[*] Analyzing {len(flows)} TCP streams ({len(failures)} skipped)...")

    results = _map(demultiplex_flow, flows, config.jobs)
    summary.messages_skipped = sum(len(r.parse_errors) for r in results)
    summary.exchanges = sum(len(r.exchanges) for r in results)

    key = config.key or select_key(results, config.keep_unknown)
    summary.key = key
    decryptor = Decryptor(key, keep_unknown=config.keep_unknown)
    results = _map(lambda r: decrypt_flow(r, decryptor), results, config.jobs)

    for result in results:
        for side in result.sides:
            if side.result is not None:
                summary.recovered += 1
            else:
                summary.failed += 1

    rows = write_artifacts(results, config.outdir, summary)
    if config.report:
        report_path = Path(config.outdir) / REPORT_NAME
        try:
            summary.report_path = write_report(rows, report_path)
            log.info(f"[*] Behinder analysis report saved to '{report_path}'.")
        except IoWriteError as e:
            summary.write_failures += 1
            log.warning(f"[!] Could not write report: {e.describe()}")

    log.info(f"\n[*] Recovered {summary.recovered} of {summary.recovered + summary.failed} exchange bodies "
             f"({summary.failed} failed) from {summary.exchanges} exchanges; "
             f"{len(summary.artifacts)} artifacts written to '{config.outdir}'.")
    if summary.write_failures:
        log.warning(f"[!] {summary.write_failures} file(s) could not be written.")
    return summary
