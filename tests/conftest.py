from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from decrypt_behinder_payload import AesEcbCipher, Codec, RawKeyRule, SecretKey
from pcap_loader import Direction, Packet, flow_key
from tcp_reassembly import Reassembler

KEY = "e45e329feb5d925b"
CLIENT = ("10.0.0.2", 50123)
SERVER = ("10.0.0.1", 80)
ECB = Codec(AesEcbCipher(), RawKeyRule())


def make_packet(payload: bytes, direction=Direction.CLIENT_TO_SERVER, seq=None, index=1,
                client=CLIENT, server=SERVER) -> Packet:
    src, dst = (client, server) if direction is Direction.CLIENT_TO_SERVER else (server, client)
    return Packet(flow_key(src, dst), direction, seq, payload, index, src, dst, float(index))


def make_flow(request: bytes = b"", response: bytes = b"", segment: int = 0):
    """Assemble a flow from whole client and server byte streams."""
    reassembler = Reassembler()
    index = 1
    for direction, data, isn in ((Direction.CLIENT_TO_SERVER, request, 1000),
                                 (Direction.SERVER_TO_CLIENT, response, 9000)):
        size = segment or max(len(data), 1)
        for offset in range(0, len(data), size):
            reassembler.feed(make_packet(data[offset:offset + size], direction, isn + offset, index))
            index += 1
    flows, failed = reassembler.flows()
    assert not failed
    return flows[0]


def http_request(body: bytes, uri: str = "/shell.jsp") -> bytes:
    head = (f"POST {uri} HTTP/1.1\r\nHost: 10.0.0.1\r\n"
            f"Content-Type: application/octet-stream\r\nContent-Length: {len(body)}\r\n\r\n")
    return head.encode() + body


def http_response(body: bytes, chunked: bool = False) -> bytes:
    if chunked:
        half = len(body) // 2
        framed = b""
        for part in (body[:half], body[half:]):
            if part:
                framed += f"{len(part):x}\r\n".encode() + part + b"\r\n"
        framed += b"0\r\n\r\n"
        return b"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\nTransfer-Encoding: chunked\r\n\r\n" + framed
    head = f"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\nContent-Length: {len(body)}\r\n\r\n"
    return head.encode() + body


def class_payload(n: int) -> bytes:
    return b"\xca\xfe\xba\xbe\x00\x00\x00\x34" + bytes((n * 7 + i) % 256 for i in range(40 + n * 13))


def control_payload(n: int) -> bytes:
    message = {
        "status": base64.b64encode(b"success").decode(),
        "msg": base64.b64encode(f"result of command {n}".encode()).decode(),
    }
    return json.dumps(message, separators=(",", ":")).encode()


def encrypt(plaintext: bytes, key: str = KEY) -> bytes:
    return ECB.encode(plaintext, SecretKey(key))


def write_capture(path: Path, conversations) -> Path:
    """Write a pcap of TCP conversations.

    ``conversations`` is a list of ``(client, server, [(request, response), ...])``.
    Payloads are split into 100 byte segments.
    """
    from scapy.layers.inet import IP, TCP
    from scapy.layers.l2 import Ether
    from scapy.packet import Raw
    from scapy.utils import wrpcap

    packets = []
    clock = [1700000000.0]

    def emit(src, dst, flags, seq, ack, payload=b""):
        pkt = (Ether(src="02:00:00:00:00:01", dst="02:00:00:00:00:02")
               / IP(src=src[0], dst=dst[0])
               / TCP(sport=src[1], dport=dst[1], flags=flags, seq=seq, ack=ack))
        if payload:
            pkt = pkt / Raw(load=payload)
        clock[0] += 0.001
        pkt.time = clock[0]
        packets.append(pkt)

    for client, server, exchanges in conversations:
        cseq, sseq = 1000, 5000
        emit(client, server, "S", cseq, 0)
        emit(server, client, "SA", sseq, cseq + 1)
        cseq += 1
        sseq += 1
        emit(client, server, "A", cseq, sseq)
        for request, response in exchanges:
            for offset in range(0, len(request), 100):
                part = request[offset:offset + 100]
                emit(client, server, "PA", cseq, sseq, part)
                cseq += len(part)
            for offset in range(0, len(response), 100):
                part = response[offset:offset + 100]
                emit(server, client, "PA", sseq, cseq, part)
                sseq += len(part)
        emit(client, server, "FA", cseq, sseq)
        emit(server, client, "FA", sseq, cseq + 1)

    wrpcap(str(path), packets)
    return path


def behinder_exchanges(count: int = 5, key: str = KEY):
    exchanges = []
    for n in range(1, count + 1):
        request = http_request(encrypt(class_payload(n), key))
        response = http_response(encrypt(control_payload(n), key), chunked=(n == 3))
        exchanges.append((request, response))
    return exchanges


@pytest.fixture()
def behinder_pcap(tmp_path: Path) -> Path:
    return write_capture(tmp_path / "behinder.pcap", [(CLIENT, SERVER, behinder_exchanges())])
