#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import base64
import binascii
import enum
import hashlib
import json
import logging
import re
import sys
from dataclasses import dataclass
from typing import Iterable, List, Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad

from analyzer_errors import DecryptError

log = logging.getLogger(__name__)

# Behinder body decoding, codec probing and plaintext classification

B64_ALPHABET = frozenset(b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/")

# Quoted 16 character literals, e.g. $key="e45e329feb5d925b" in an uploaded shell
KEY_LITERAL = re.compile(rb"[\"']([0-9A-Za-z_]{16})[\"']")

SIGNATURES = [
    (b"\xca\xfe\xba\xbe", ".class"),
    (b"\xac\xed\x00\x05", ".ser"),
    (b"MZ", ".exe"),
    (b"\x7fELF", ".elf"),
    (b"PK\x03\x04", ".zip"),
    (b"PK\x05\x06", ".zip"),
    (b"\x1f\x8b\x08", ".gz"),
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"\xff\xd8\xff", ".jpg"),
    (b"GIF8", ".gif"),
    (b"%PDF-", ".pdf"),
    (b"Rar!\x1a\x07", ".rar"),
    (b"7z\xbc\xaf\x27\x1c", ".7z"),
]


class ContentKind(enum.Enum):
    BINARY = "binary"
    STRUCTURED_TEXT = "structured"
    PLAIN_TEXT = "text"


# --- Body decoding ---

def decode_body(body: bytes) -> bytes:
    """
    Base64-decodes an HTTP body. Whitespace, URL-safe characters, missing
    padding and a dangling final character are tolerated, but every other
    byte of the body must be in the alphabet: form posts and short words
    are not webshell traffic.
    """
    text = re.sub(rb"\s+", b"", body).replace(b"-", b"+").replace(b"_", b"/").rstrip(b"=")
    for offset, byte in enumerate(text):
        if byte not in B64_ALPHABET:
            raise DecryptError(f"body is not base64 (byte {byte:#04x} at offset {offset})")
    length = len(text)
    if length % 4 == 1:
        length -= 1
    if length == 0:
        raise DecryptError("body is not base64")

    chunk = text[:length]
    chunk += b"=" * (-len(chunk) % 4)
    try:
        data = base64.b64decode(chunk, validate=True)
    except binascii.Error as e:
        raise DecryptError(f"base64 decoding failed: {e}") from e
    if not data:
        raise DecryptError("body decodes to nothing")
    return data


# --- Key material ---

@dataclass(frozen=True)
class SecretKey:
    """
    Operator supplied secret. 16 or 24 characters are taken literally,
    32 or 64 hex digits are decoded to 16 or 32 bytes. Any other string is
    treated as a connection password and only works with key rules that
    derive a key from it.
    """
    text: str

    @property
    def literal(self) -> Optional[bytes]:
        text = self.text
        if len(text) in (32, 64) and all(c in "0123456789abcdefABCDEF" for c in text):
            return bytes.fromhex(text)
        if len(text) in (16, 24, 32):
            return text.encode("utf-8") if len(text.encode("utf-8")) == len(text) else None
        return None

    def __str__(self):
        return self.text


class RawKeyRule:
    """Use the secret as the AES key."""
    name = "raw"

    def derive(self, secret: SecretKey) -> Optional[bytes]:
        return secret.literal


class Md5KeyRule:
    """Behinder's default: the first 16 hex digits of md5(password)."""
    name = "md5"

    def derive(self, secret: SecretKey) -> Optional[bytes]:
        return hashlib.md5(secret.text.encode("utf-8")).hexdigest()[:16].encode()


# --- Ciphers ---

class AesEcbCipher:
    name = "aes-ecb"

    def encrypt(self, plaintext: bytes, key: bytes) -> bytes:
        return AES.new(key, AES.MODE_ECB).encrypt(pad(plaintext, AES.block_size))

    def decrypt(self, data: bytes, key: bytes) -> bytes:
        if len(data) % AES.block_size:
            raise DecryptError(f"{len(data)} bytes is not a whole number of blocks")
        padded = AES.new(key, AES.MODE_ECB).decrypt(data)
        try:
            return unpad(padded, AES.block_size)
        except ValueError as e:
            raise DecryptError(f"bad padding: {e}") from e


class AesCbcCipher:
    """AES-CBC with an IV derived from the key.

    ASP.NET shells use the key itself as IV. PHP shells with openssl call
    openssl_decrypt($post, "AES128", $key), which runs CBC with a zero IV.
    """

    def __init__(self, iv_rule="key"):
        self.iv_rule = iv_rule
        self.name = f"aes-cbc-{iv_rule}iv"

    def iv(self, key: bytes) -> bytes:
        if self.iv_rule == "md5":
            return hashlib.md5(key).digest()
        if self.iv_rule == "zero":
            return bytes(AES.block_size)
        return key[:AES.block_size]

    def encrypt(self, plaintext: bytes, key: bytes) -> bytes:
        return AES.new(key, AES.MODE_CBC, self.iv(key)).encrypt(pad(plaintext, AES.block_size))

    def decrypt(self, data: bytes, key: bytes) -> bytes:
        if len(data) % AES.block_size:
            raise DecryptError(f"{len(data)} bytes is not a whole number of blocks")
        padded = AES.new(key, AES.MODE_CBC, self.iv(key)).decrypt(data)
        try:
            return unpad(padded, AES.block_size)
        except ValueError as e:
            raise DecryptError(f"bad padding: {e}") from e


class XorCipher:
    """PHP shells without openssl: byte i is xored with key[(i + 1) & 15]."""
    name = "xor"
    # the text check is only trusted from this many bytes on
    min_length = 16

    def encrypt(self, plaintext: bytes, key: bytes) -> bytes:
        return self._xor(plaintext, key)

    def decrypt(self, data: bytes, key: bytes) -> bytes:
        if len(data) < self.min_length:
            raise DecryptError(f"{len(data)} bytes is too short for xor")
        plaintext = self._xor(data, key)
        # no padding to check, so the result has to look like protocol traffic
        if parse_control_message(plaintext) is None and not is_readable_text(plaintext):
            raise DecryptError("xor output is neither a control message nor text")
        return plaintext

    @staticmethod
    def _xor(data: bytes, key: bytes) -> bytes:
        return bytes(b ^ key[(i + 1) & 15] for i, b in enumerate(data))


class Codec:
    """One decryption variant: a cipher mode plus a key derivation rule."""

    def __init__(self, cipher, key_rule):
        self.cipher = cipher
        self.key_rule = key_rule
        self.name = f"{cipher.name}/{key_rule.name}"

    def key_for(self, secret: SecretKey) -> Optional[bytes]:
        return self.key_rule.derive(secret)

    def encode(self, plaintext: bytes, secret: SecretKey) -> bytes:
        key = self.key_for(secret)
        if key is None:
            raise DecryptError(f"{self.name} cannot use this key")
        return base64.b64encode(self.cipher.encrypt(plaintext, key))

    def decode(self, data: bytes, secret: SecretKey) -> bytes:
        """Decrypt already base64-decoded ``data``."""
        key = self.key_for(secret)
        if key is None:
            raise DecryptError(f"{self.name} cannot use this key")
        return self.cipher.decrypt(data, key)

    def __repr__(self):
        return f"Codec({self.name})"


DEFAULT_CODECS = [
    Codec(AesEcbCipher(), RawKeyRule()),
    Codec(AesCbcCipher("key"), RawKeyRule()),
    Codec(AesCbcCipher("md5"), RawKeyRule()),
    Codec(AesCbcCipher("zero"), RawKeyRule()),
    Codec(XorCipher(), RawKeyRule()),
    Codec(AesEcbCipher(), Md5KeyRule()),
    Codec(AesCbcCipher("key"), Md5KeyRule()),
    Codec(AesCbcCipher("md5"), Md5KeyRule()),
    Codec(AesCbcCipher("zero"), Md5KeyRule()),
    Codec(XorCipher(), Md5KeyRule()),
]


# --- Classification ---

def parse_control_message(data: bytes):
    """Return the decoded JSON envelope, or None if ``data`` is not one."""
    text = data.strip(b"\x00 \t\r\n")
    if text[:1] not in (b"{", b"["):
        return None
    try:
        value = json.loads(text.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return value if isinstance(value, (dict, list)) else None


def is_readable_text(data: bytes, threshold=0.95) -> bool:
    if not data or b"\x00" in data:
        return False
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    printable = sum(1 for c in text if c.isprintable() or c in "\r\n\t")
    return printable / len(text) >= threshold


def sniff_extension(data: bytes) -> Optional[str]:
    for magic, extension in SIGNATURES:
        if data.startswith(magic):
            return extension
    return None


def classify(data: bytes) -> ContentKind:
    if parse_control_message(data) is not None:
        return ContentKind.STRUCTURED_TEXT
    if is_readable_text(data):
        return ContentKind.PLAIN_TEXT
    return ContentKind.BINARY


def _b64_text(value: str):
    if len(value) < 4 or len(value) % 4:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def expand_control_message(value):
    """Recursively replace base64 string values with what they encode.

    Values that decode to JSON are expanded in turn; values that decode to
    UTF-8 text become that text; anything else is left alone.
    """
    if isinstance(value, dict):
        return {k: expand_control_message(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_control_message(v) for v in value]
    if isinstance(value, str):
        decoded = _b64_text(value)
        if decoded is None:
            return value
        nested = parse_control_message(decoded)
        if nested is not None:
            return expand_control_message(nested)
        try:
            return decoded.decode("utf-8")
        except UnicodeDecodeError:
            return value
    return value


def render_control_message(data: bytes) -> bytes:
    expanded = expand_control_message(parse_control_message(data))
    return json.dumps(expanded, ensure_ascii=False, indent=2).encode("utf-8")


# --- Probing ---

@dataclass(frozen=True)
class Decrypted:
    codec: str
    plaintext: bytes
    kind: ContentKind


def is_recognizable(plaintext: bytes, kind: ContentKind) -> bool:
    return kind is not ContentKind.BINARY or sniff_extension(plaintext) is not None


class Decryptor:
    """Tries each codec in order and keeps the first plausible plaintext.

    A codec's own check (PKCS#7 padding for AES) passes for roughly one in
    256 wrong keys, so the plaintext must also be recognizable: a control
    message, readable text or a known file signature. ``keep_unknown``
    relaxes that for binary payloads of unknown type.
    """

    def __init__(self, secret, codecs=None, keep_unknown=False):
        self.secret = secret if isinstance(secret, SecretKey) else SecretKey(secret)
        candidates = DEFAULT_CODECS if codecs is None else codecs
        self.codecs = [c for c in candidates if c.key_for(self.secret) is not None]
        self.keep_unknown = keep_unknown
        if not self.codecs:
            raise ValueError(f"no codec accepts a key of {len(self.secret.text)} characters")

    def decrypt(self, body: bytes, context=None) -> Decrypted:
        data = decode_body(body)
        failures = []
        for codec in self.codecs:
            try:
                plaintext = codec.decode(data, self.secret)
            except DecryptError as e:
                failures.append(f"{codec.name}: {e}")
                continue
            kind = classify(plaintext)
            if not self.keep_unknown and not is_recognizable(plaintext, kind):
                failures.append(f"{codec.name}: unrecognized plaintext")
                continue
            log.debug(f"[-] Decrypted {len(data)} bytes with {codec.name} as {kind.value}")
            return Decrypted(codec.name, plaintext, kind)
        raise DecryptError("no codec validated (" + "; ".join(failures) + ")", context)


def discover_keys(bodies: Iterable[bytes]) -> List[str]:
    """Collect candidate keys from quoted 16-character literals in plaintext traffic."""
    seen = []
    for body in bodies:
        for match in KEY_LITERAL.finditer(body):
            key = match.group(1).decode("ascii")
            if key not in seen:
                seen.append(key)
    return seen


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Decrypt a single Behinder request or response body.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument("payload", help="The captured HTTP body (base64 text).")
    parser.add_argument("-k", "--key", required=True, help="16 character key, 32 hex digits, or the connection password.")
    args = parser.parse_args(argv)

    try:
        result = Decryptor(args.key).decrypt(args.payload.encode())
    except (DecryptError, ValueError) as e:
        print(f"[!] Decryption failed: {e}")
        return 1

    print(f"--- Decrypted with {result.codec} ({result.kind.value}) ---")
    if result.kind is ContentKind.STRUCTURED_TEXT:
        print(render_control_message(result.plaintext).decode("utf-8"))
    elif result.kind is ContentKind.PLAIN_TEXT:
        print(result.plaintext.decode("utf-8"))
    else:
        print(result.plaintext.hex())
    return 0


if __name__ == "__main__":
    sys.exit(main())
