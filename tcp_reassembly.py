# -*- coding: utf-8 -*-

"""TCP stream reassembly.

Packets are grouped by their unordered endpoint pair and each direction is
rebuilt into a contiguous byte buffer. When every segment of a direction
carries a sequence number the buffer is built by sequence offset; otherwise
payloads are joined in the order the loader emitted them.

The arrival-order path is an approximation: it cannot undo reordering and
keeps retransmitted bytes twice. Captures written by tshark or tcpdump carry
sequence numbers, so this only matters for backends that lose them.
"""

import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from analyzer_errors import StreamReassemblyError
from pcap_loader import Direction, Endpoint, FlowKey, Packet

log = logging.getLogger(__name__)

SEQ_MOD = 1 << 32


class _Coverage:
    """Sorted, disjoint set of byte ranges already claimed in a direction."""

    def __init__(self):
        self.starts = []
        self.ends = []

    def claim(self, start: int, end: int) -> List[Tuple[int, int]]:
        """Mark ``[start, end)`` as covered and return the parts that were new."""
        i = bisect_right(self.ends, start)
        j = i
        fresh = []
        pos = start
        while j < len(self.starts) and self.starts[j] < end:
            if self.starts[j] > pos:
                fresh.append((pos, self.starts[j]))
            pos = max(pos, self.ends[j])
            j += 1
        if pos < end:
            fresh.append((pos, end))
        if start >= end:
            return fresh

        new_start = min(start, self.starts[i]) if i < j else start
        new_end = max(end, self.ends[j - 1]) if i < j else end
        self.starts[i:j] = [new_start]
        self.ends[i:j] = [new_end]
        return fresh


@dataclass
class _Stream:
    """Segments and rebuilt bytes for one direction of a flow."""
    segments: List[Packet] = field(default_factory=list)
    buffer: bytearray = field(default_factory=bytearray)
    # (buffer offset, frame number, timestamp) for each placed piece
    marks: List[Tuple[int, int, Optional[float]]] = field(default_factory=list)
    cursor: int = 0
    sequenced: bool = False


@dataclass
class Flow:
    key: FlowKey
    client: Endpoint
    server: Endpoint
    first_index: int
    first_timestamp: Optional[float] = None
    streams: Dict[Direction, _Stream] = field(
        default_factory=lambda: {d: _Stream() for d in Direction})

    @property
    def label(self) -> str:
        return f"{self.client[0]}:{self.client[1]} <-> {self.server[0]}:{self.server[1]}"

    def buffer(self, direction: Direction) -> bytearray:
        return self.streams[direction].buffer

    def cursor(self, direction: Direction) -> int:
        return self.streams[direction].cursor

    def advance(self, direction: Direction, offset: int):
        stream = self.streams[direction]
        if offset < stream.cursor or offset > len(stream.buffer):
            raise ValueError(f"cursor {offset} outside buffer of {len(stream.buffer)} bytes")
        stream.cursor = offset

    def is_sequenced(self, direction: Direction) -> bool:
        return self.streams[direction].sequenced

    def frame_at(self, direction: Direction, offset: int) -> Tuple[int, Optional[float]]:
        """Frame number and timestamp of the packet that carried ``offset``."""
        marks = self.streams[direction].marks
        if not marks:
            return self.first_index, self.first_timestamp
        pos = bisect_right(marks, (offset, float("inf"))) - 1
        _, index, timestamp = marks[max(pos, 0)]
        return index, timestamp

    def add(self, packet: Packet):
        self.streams[packet.direction].segments.append(packet)

    def assemble(self):
        """Build both direction buffers; raises StreamReassemblyError on a gap."""
        for direction, stream in self.streams.items():
            if not stream.segments:
                continue
            if all(seg.seq is not None for seg in stream.segments):
                stream.sequenced = True
                _assemble_sequenced(self, direction, stream)
            else:
                stream.sequenced = False
                _assemble_arrival(stream)
            stream.segments = []


def _assemble_arrival(stream: _Stream):
    for seg in stream.segments:
        stream.marks.append((len(stream.buffer), seg.index, seg.timestamp))
        stream.buffer += seg.payload


def _relative(seq: int, base: int) -> int:
    rel = (seq - base) % SEQ_MOD
    # segments that precede the first one seen come out as huge offsets
    if rel >= SEQ_MOD // 2:
        rel -= SEQ_MOD
    return rel


def _assemble_sequenced(flow: Flow, direction: Direction, stream: _Stream):
    base = stream.segments[0].seq
    coverage = _Coverage()
    pieces = []
    duplicates = 0
    for seg in stream.segments:
        if not seg.payload:
            continue
        rel = _relative(seg.seq, base)
        fresh = coverage.claim(rel, rel + len(seg.payload))
        if not fresh:
            duplicates += 1
        for start, end in fresh:
            pieces.append((start, seg.payload[start - rel:end - rel], seg.index, seg.timestamp))

    if duplicates:
        log.debug(f"[-] {flow.label} {direction.value}: dropped {duplicates} duplicate segment(s)")

    if not pieces:
        return
    pieces.sort(key=lambda p: p[0])
    expected = pieces[0][0]
    for start, data, index, timestamp in pieces:
        if start != expected:
            raise StreamReassemblyError(
                f"missing {start - expected} byte(s) at stream offset {expected - pieces[0][0]}",
                {"flow": flow.label, "direction": direction.value},
            )
        stream.marks.append((len(stream.buffer), index, timestamp))
        stream.buffer += data
        expected += len(data)


class Reassembler:
    """Owns the flow table for one run."""

    def __init__(self):
        self._flows: Dict[FlowKey, Flow] = {}

    def feed(self, packet: Packet):
        flow = self._flows.get(packet.flow)
        if flow is None:
            if packet.direction is Direction.CLIENT_TO_SERVER:
                client, server = packet.src, packet.dst
            else:
                client, server = packet.dst, packet.src
            flow = Flow(packet.flow, client, server, packet.index, packet.timestamp)
            self._flows[packet.flow] = flow
        flow.add(packet)

    def feed_all(self, packets: Iterable[Packet]) -> "Reassembler":
        count = 0
        for packet in packets:
            self.feed(packet)
            count += 1
        log.info(f"[*] Grouped {count} payload packets into {len(self._flows)} TCP streams")
        return self

    def flows(self) -> Tuple[List[Flow], List[StreamReassemblyError]]:
        """Assemble every flow, in order of first appearance.

        Flows that cannot be ordered are left out of the first list and
        reported in the second.
        """
        good, failed = [], []
        for flow in self._flows.values():
            try:
                flow.assemble()
            except StreamReassemblyError as e:
                failed.append(e)
                continue
            good.append(flow)
        return good, failed


def reassemble(packets: Iterable[Packet]) -> Tuple[List[Flow], List[StreamReassemblyError]]:
    return Reassembler().feed_all(packets).flows()
