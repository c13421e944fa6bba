# -*- coding: utf-8 -*-

"""Splits reassembled TCP buffers into HTTP/1.x messages and pairs them."""

import logging
import re
import zlib
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from analyzer_errors import HttpParseError
from pcap_loader import Direction
from tcp_reassembly import Flow

log = logging.getLogger(__name__)

METHODS = (b"GET", b"POST", b"PUT", b"HEAD", b"OPTIONS", b"DELETE", b"PATCH", b"TRACE", b"CONNECT")
_METHOD_ALT = b"|".join(METHODS)

REQUEST_LINE = re.compile(rb"([A-Z]+) (\S+) HTTP/(\d)\.(\d)")
STATUS_LINE = re.compile(rb"HTTP/(\d)\.(\d) (\d{3})(?: ([^\r\n]*))?")
HEADER_LINE = re.compile(rb"([!#$%&'*+\-.^_`|~0-9A-Za-z]+):[ \t]*(.*?)[ \t]*")
CHUNK_SIZE = re.compile(rb"[0-9A-Fa-f]+")
CONTENT_LENGTH = re.compile(r"[0-9]+")

# used to find the next message boundary after a malformed one
_NEXT_START = {
    Direction.CLIENT_TO_SERVER: re.compile(rb"(?:" + _METHOD_ALT + rb") \S+ HTTP/\d\.\d\r\n"),
    Direction.SERVER_TO_CLIENT: re.compile(rb"HTTP/\d\.\d \d{3}(?: [^\r\n]*)?\r\n"),
}


class Headers:
    """Case-insensitive header mapping; ``get`` returns the last value."""

    def __init__(self, items=()):
        self._items = []
        for name, value in items:
            self.add(name, value)

    def add(self, name: str, value: str):
        self._items.append((name, value))

    def get(self, name: str, default=None):
        name = name.lower()
        for key, value in reversed(self._items):
            if key.lower() == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self._items if key.lower() == name]

    def items(self):
        return list(self._items)

    def __contains__(self, name):
        return self.get(name) is not None

    def __getitem__(self, name):
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __len__(self):
        return len(self._items)

    def __repr__(self):
        return f"Headers({self._items!r})"


@dataclass
class HttpMessage:
    direction: Direction
    start_line: str
    headers: Headers
    body: bytes
    offset: int
    end: int
    frame: int
    timestamp: Optional[float] = None
    exchange: Optional[int] = None

    @property
    def is_request(self) -> bool:
        return self.direction is Direction.CLIENT_TO_SERVER

    @property
    def method(self) -> Optional[str]:
        return self.start_line.split(" ", 1)[0] if self.is_request else None

    @property
    def uri(self) -> Optional[str]:
        return self.start_line.split(" ")[1] if self.is_request else None

    @property
    def status(self) -> Optional[int]:
        if self.is_request:
            return None
        return int(self.start_line.split(" ")[1])


@dataclass
class Exchange:
    """The Nth request of a flow and the Nth final response."""
    index: int
    request: Optional[HttpMessage] = None
    response: Optional[HttpMessage] = None

    @property
    def frame(self) -> int:
        first = self.request or self.response
        return first.frame

    @property
    def timestamp(self) -> Optional[float]:
        first = self.request or self.response
        return first.timestamp


class _Incomplete(Exception):
    """Not enough bytes left to finish the message."""


@dataclass
class _ParseResult:
    messages: List[HttpMessage] = field(default_factory=list)
    errors: List[HttpParseError] = field(default_factory=list)


# --- Body framing ---

def dechunk(buf, pos: int) -> Tuple[bytes, int]:
    """Decode chunked transfer coding starting at ``pos``.

    Returns the body and the offset just past the trailer section.
    """
    out = bytearray()
    while True:
        line_end = buf.find(b"\r\n", pos)
        if line_end == -1:
            raise _Incomplete()
        size_field = bytes(buf[pos:line_end]).split(b";", 1)[0].strip()
        if not CHUNK_SIZE.fullmatch(size_field):
            raise HttpParseError(f"bad chunk size {size_field[:16]!r}")
        size = int(size_field, 16)
        pos = line_end + 2
        if size == 0:
            while True:
                line_end = buf.find(b"\r\n", pos)
                if line_end == -1:
                    raise _Incomplete()
                if line_end == pos:
                    return bytes(out), pos + 2
                pos = line_end + 2
        if pos + size + 2 > len(buf):
            raise _Incomplete()
        out += buf[pos:pos + size]
        if buf[pos + size:pos + size + 2] != b"\r\n":
            raise HttpParseError("chunk data not followed by CRLF")
        pos += size + 2


def decode_content(body: bytes, headers: Headers, context=None) -> bytes:
    encoding = (headers.get("Content-Encoding") or "").strip().lower()
    if not body or encoding in ("", "identity"):
        return body
    try:
        if encoding in ("gzip", "x-gzip"):
            return zlib.decompress(body, 16 + zlib.MAX_WBITS)
        if encoding == "deflate":
            try:
                return zlib.decompress(body)
            except zlib.error:
                return zlib.decompress(body, -zlib.MAX_WBITS)
    except zlib.error as e:
        log.warning(f"[!] Could not inflate {encoding} body ({context or {}}): {e}; keeping raw bytes")
        return body
    log.debug(f"[-] Unsupported Content-Encoding '{encoding}', keeping raw bytes")
    return body


def _body_has_no_content(status: int, request_method: Optional[str]) -> bool:
    return 100 <= status < 200 or status in (204, 304) or request_method == "HEAD"


# --- Message parsing ---

def _parse_head(buf, pos: int, direction: Direction) -> Tuple[str, Headers, int]:
    head_end = buf.find(b"\r\n\r\n", pos)
    if head_end == -1:
        raise _Incomplete()
    lines = bytes(buf[pos:head_end]).split(b"\r\n")

    pattern = REQUEST_LINE if direction is Direction.CLIENT_TO_SERVER else STATUS_LINE
    if not pattern.fullmatch(lines[0]):
        raise HttpParseError(f"no {'request' if pattern is REQUEST_LINE else 'status'} line: {lines[0][:40]!r}")

    headers = Headers()
    for line in lines[1:]:
        match = HEADER_LINE.fullmatch(line)
        if match is None:
            raise HttpParseError(f"malformed header line {line[:40]!r}")
        headers.add(match.group(1).decode("latin-1"), match.group(2).decode("latin-1"))
    return lines[0].decode("latin-1"), headers, head_end + 4


def _parse_message(flow: Flow, direction: Direction, pos: int, request_method=None) -> HttpMessage:
    buf = flow.buffer(direction)
    start_line, headers, body_start = _parse_head(buf, pos, direction)
    status = None
    if direction is Direction.SERVER_TO_CLIENT:
        status = int(start_line.split(" ")[1])

    length = headers.get("Content-Length")
    transfer = (headers.get("Transfer-Encoding") or "").lower()

    if status is not None and _body_has_no_content(status, request_method):
        body, end = b"", body_start
    elif length is not None:
        if not CONTENT_LENGTH.fullmatch(length.strip()):
            raise HttpParseError(f"bad Content-Length {length!r}")
        end = body_start + int(length)
        if end > len(buf):
            raise _Incomplete()
        body = bytes(buf[body_start:end])
    elif "chunked" in transfer:
        body, end = dechunk(buf, body_start)
    elif status is None:
        body, end = b"", body_start
    else:
        # no framing: the response runs until the connection closed
        body, end = bytes(buf[body_start:]), len(buf)

    frame, timestamp = flow.frame_at(direction, pos)
    body = decode_content(body, headers, {"flow": flow.label, "frame": frame})
    return HttpMessage(direction, start_line, headers, body, pos, end, frame, timestamp)


def parse_direction(flow: Flow, direction: Direction, request_methods=()) -> _ParseResult:
    """Parse every complete message in one direction of ``flow``.

    ``request_methods`` lists the methods of the flow's requests in order,
    so responses to HEAD are read without a body.
    """
    result = _ParseResult()
    buf = flow.buffer(direction)
    pos = flow.cursor(direction)
    finals = 0

    while pos < len(buf):
        # tolerate stray CRLFs between pipelined messages
        while buf[pos:pos + 2] == b"\r\n":
            pos += 2
        if pos >= len(buf):
            break

        method = request_methods[finals] if finals < len(request_methods) else None
        try:
            message = _parse_message(flow, direction, pos, method)
        except _Incomplete:
            log.debug(f"[-] {flow.label} {direction.value}: discarding {len(buf) - pos} trailing byte(s) of an incomplete message")
            pos = len(buf)
            break
        except HttpParseError as e:
            e.context.update({"flow": flow.label, "direction": direction.value, "offset": pos})
            result.errors.append(e)
            match = _NEXT_START[direction].search(buf, pos + 1)
            if match is None:
                log.debug(f"[-] {flow.label} {direction.value}: no further message boundary, abandoning")
                pos = len(buf)
                break
            pos = match.start()
            continue

        result.messages.append(message)
        if message.status is None or message.status >= 200:
            finals += 1
        pos = message.end

    flow.advance(direction, pos)
    return result


def demultiplex(flow: Flow) -> Tuple[List[Exchange], List[HttpParseError]]:
    """Extract request/response exchanges from an assembled flow."""
    requests = parse_direction(flow, Direction.CLIENT_TO_SERVER)
    methods = [m.method for m in requests.messages]
    responses = parse_direction(flow, Direction.SERVER_TO_CLIENT, methods)

    finals = []
    for message in responses.messages:
        if message.status < 200:
            log.debug(f"[-] {flow.label}: skipping interim {message.status} response")
            continue
        finals.append(message)

    exchanges = []
    for index in range(max(len(requests.messages), len(finals))):
        request = requests.messages[index] if index < len(requests.messages) else None
        response = finals[index] if index < len(finals) else None
        for message in (request, response):
            if message is not None:
                message.exchange = index
        exchanges.append(Exchange(index, request, response))

    return exchanges, requests.errors + responses.errors
