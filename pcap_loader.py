# -*- coding: utf-8 -*-

"""Capture ingestion: turns a pcap/pcapng file into TCP payload packets.

Dissection is delegated to a backend. The default backend runs tshark as a
subprocess and streams its field output; the scapy backend reads the file
in-process. Both feed the same direction resolution and emit ``Packet``.
"""

import enum
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, NamedTuple, Optional, Tuple

from analyzer_errors import CaptureReadError

log = logging.getLogger(__name__)

Endpoint = Tuple[str, int]
FlowKey = Tuple[Endpoint, Endpoint]

REQUEST_METHODS = (b"GET ", b"POST ", b"PUT ", b"HEAD ", b"OPTIONS ", b"DELETE ", b"PATCH ", b"TRACE ", b"CONNECT ")


class Direction(enum.Enum):
    CLIENT_TO_SERVER = "client->server"
    SERVER_TO_CLIENT = "server->client"


@dataclass(frozen=True)
class Packet:
    flow: FlowKey
    direction: Direction
    seq: Optional[int]
    payload: bytes
    index: int
    src: Endpoint
    dst: Endpoint
    timestamp: Optional[float] = None


class RawRecord(NamedTuple):
    """One TCP segment as reported by a backend, before direction resolution."""
    index: int
    timestamp: Optional[float]
    src: Endpoint
    dst: Endpoint
    seq: Optional[int]
    syn: bool
    ack: bool
    payload: bytes


def flow_key(src: Endpoint, dst: Endpoint) -> FlowKey:
    return tuple(sorted((src, dst)))


# --- Backends ---

class TsharkBackend:
    """Runs tshark and parses its tab separated field output."""

    FIELDS = (
        "frame.number",
        "frame.time_epoch",
        "ip.src",
        "ipv6.src",
        "ip.dst",
        "ipv6.dst",
        "tcp.srcport",
        "tcp.dstport",
        "tcp.seq_raw",
        "tcp.flags.syn",
        "tcp.flags.ack",
        "tcp.payload",
    )

    def __init__(self, executable="tshark"):
        self.executable = executable

    def command(self, path) -> list:
        cmd = [self.executable, "-n", "-r", str(path), "-Y", "tcp", "-T", "fields",
               "-E", "separator=/t", "-E", "occurrence=f"]
        for field in self.FIELDS:
            cmd.extend(["-e", field])
        return cmd

    def records(self, path) -> Iterator[RawRecord]:
        if shutil.which(self.executable) is None:
            raise CaptureReadError(f"'{self.executable}' was not found on PATH", {"file": path})

        # stderr goes to a file so a chatty tshark cannot block on a full pipe
        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(self.command(path), stdout=subprocess.PIPE, stderr=stderr, text=True)
            except OSError as e:
                raise CaptureReadError(f"could not start {self.executable}: {e}", {"file": path}) from e

            try:
                for lineno, line in enumerate(proc.stdout, 1):
                    if not line.strip():
                        continue
                    yield self.parse_line(line, lineno)
                returncode = proc.wait()
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                proc.stdout.close()

            if returncode != 0:
                stderr.seek(0)
                message = stderr.read().decode("utf-8", "replace").strip()
                raise CaptureReadError(message or f"tshark exited with status {returncode}", {"file": path})

    def parse_line(self, line: str, lineno: int = 0) -> RawRecord:
        fields = line.rstrip("\r\n").split("\t")
        if len(fields) != len(self.FIELDS):
            raise CaptureReadError(f"unexpected tshark output on line {lineno}: {len(fields)} fields")
        (number, epoch, ip_src, ip6_src, ip_dst, ip6_dst,
         sport, dport, seq_raw, syn, ack, payload_hex) = fields
        try:
            src = (ip_src or ip6_src, int(sport))
            dst = (ip_dst or ip6_dst, int(dport))
            payload = bytes.fromhex(payload_hex.replace(":", ""))
            return RawRecord(
                index=int(number),
                timestamp=float(epoch) if epoch else None,
                src=src,
                dst=dst,
                seq=int(seq_raw) if seq_raw else None,
                syn=_flag(syn),
                ack=_flag(ack),
                payload=payload,
            )
        except ValueError as e:
            raise CaptureReadError(f"malformed tshark output on line {lineno}: {e}") from e


def _flag(value: str) -> bool:
    # tshark prints 1/0 on older releases and True/False on newer ones
    return value.strip().lower() in ("1", "true")


class ScapyBackend:
    """Reads the capture in-process with scapy."""

    def records(self, path) -> Iterator[RawRecord]:
        from scapy.error import Scapy_Exception
        from scapy.layers.inet import IP, TCP
        from scapy.layers.inet6 import IPv6
        from scapy.utils import PcapReader

        try:
            reader = PcapReader(str(path))
        except (Scapy_Exception, OSError, EOFError) as e:
            raise CaptureReadError(f"scapy could not read capture: {e}", {"file": path}) from e

        with reader:
            for index, packet in enumerate(reader, 1):
                if not packet.haslayer(TCP):
                    continue
                if packet.haslayer(IP):
                    src_ip, dst_ip = packet[IP].src, packet[IP].dst
                elif packet.haslayer(IPv6):
                    src_ip, dst_ip = packet[IPv6].src, packet[IPv6].dst
                else:
                    continue
                tcp = packet[TCP]
                flags = int(tcp.flags)
                yield RawRecord(
                    index=index,
                    timestamp=float(packet.time),
                    src=(src_ip, tcp.sport),
                    dst=(dst_ip, tcp.dport),
                    seq=tcp.seq,
                    syn=bool(flags & 0x02),
                    ack=bool(flags & 0x10),
                    payload=_tcp_payload(tcp),
                )


def _tcp_payload(tcp) -> bytes:
    # Work from the dissected bytes so upper-layer dissectors (scapy's HTTP
    # layer, link padding) cannot change what we see.
    if tcp.original:
        return bytes(tcp.original[tcp.dataofs * 4:])
    return bytes(tcp.payload)


BACKENDS = {
    "tshark": TsharkBackend,
    "scapy": ScapyBackend,
}


# --- Direction resolution ---

class _DirectionResolver:
    """Decides which endpoint of each flow is the client."""

    def __init__(self):
        self._clients = {}

    def resolve(self, record: RawRecord) -> Optional[Direction]:
        key = flow_key(record.src, record.dst)
        client = self._clients.get(key)
        if client is None:
            client = self._guess_client(record)
            if client is None:
                return None
            self._clients[key] = client
        return Direction.CLIENT_TO_SERVER if record.src == client else Direction.SERVER_TO_CLIENT

    @staticmethod
    def _guess_client(record: RawRecord) -> Optional[Endpoint]:
        if record.syn:
            return record.dst if record.ack else record.src
        if not record.payload:
            return None
        if record.payload.startswith(REQUEST_METHODS):
            return record.src
        if record.payload.startswith(b"HTTP/"):
            return record.dst
        # ephemeral client ports are normally above the service port
        return record.src if record.src[1] >= record.dst[1] else record.dst


class PacketSource:
    """Lazy, restartable sequence of payload-bearing TCP packets."""

    def __init__(self, path, backend):
        self.path = Path(path)
        self.backend = backend

    def __iter__(self) -> Iterator[Packet]:
        resolver = _DirectionResolver()
        for record in self.backend.records(self.path):
            direction = resolver.resolve(record)
            if direction is None or not record.payload:
                continue
            yield Packet(
                flow=flow_key(record.src, record.dst),
                direction=direction,
                seq=record.seq,
                payload=record.payload,
                index=record.index,
                src=record.src,
                dst=record.dst,
                timestamp=record.timestamp,
            )


def load(path, backend="tshark") -> PacketSource:
    """Open a capture file for reading.

    ``backend`` is a name from BACKENDS or any object with a
    ``records(path)`` method. Raises CaptureReadError when the file is
    missing or unreadable; dissection errors surface while iterating.
    """
    path = Path(path)
    if not path.is_file():
        raise CaptureReadError("capture file not found", {"file": path})
    if not os.access(path, os.R_OK):
        raise CaptureReadError("capture file is not readable", {"file": path})

    if isinstance(backend, str):
        try:
            backend = BACKENDS[backend]()
        except KeyError:
            raise CaptureReadError(f"unknown capture backend '{backend}'") from None

    log.info(f"[*] Reading capture '{path}' with {type(backend).__name__}")
    return PacketSource(path, backend)
