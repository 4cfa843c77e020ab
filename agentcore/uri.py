"""
Payload UUIDs and checksum-tagged URI segments for http(s) transports.

A listener recognises which kind of connection an incoming request belongs
to by the 8-bit checksum of the first path segment, and identifies the
payload from the UUID encoded at the start of that segment.
"""

import base64
import struct
import time
from typing import Optional

from .crypto import random_alphanumeric, random_between, random_bytes
from .errors import ValidationError
from .session import Architecture, OSFamily

URI_CHECKSUM_INITW = 92
URI_CHECKSUM_INITN = 92
URI_CHECKSUM_CONN = 98

URI_CHECKSUM_MIN_LEN = 5
UUID_URI_LENGTH = 22
URI_CHECKSUM_UUID_MIN_LEN = URI_CHECKSUM_MIN_LEN + UUID_URI_LENGTH
URI_CHECKSUM_CONN_MAX_LEN = 128

_ARCH_IDS = {Architecture.X86: 1, Architecture.X64: 2}
_PLATFORM_IDS = {OSFamily.WINDOWS: 1, OSFamily.LINUX: 6}


def checksum8(data: str) -> int:
    return sum(data.encode("latin-1")) % 0x100


class PayloadUUID:
    """Identifies a payload build: random id, platform, architecture and timestamp."""

    def __init__(self, arch: Architecture, platform: OSFamily,
                 puid: Optional[bytes] = None, timestamp: Optional[int] = None):
        self.arch = arch
        self.platform = platform
        self.puid = puid if puid is not None else random_bytes(8)
        self.timestamp = int(time.time()) if timestamp is None else timestamp
        if len(self.puid) != 8:
            raise ValidationError("Payload id must be 8 bytes")

    def to_raw(self) -> bytes:
        xor1, xor2 = random_between(0, 255), random_between(0, 255)
        arch_id = _ARCH_IDS.get(self.arch, 0)
        platform_id = _PLATFORM_IDS.get(self.platform, 0)
        ts_xor = (xor1 << 24) | (xor2 << 16) | (xor1 << 8) | xor2
        return self.puid + struct.pack(
            ">BBBBI", xor1, xor2, platform_id ^ xor1, arch_id ^ xor2,
            self.timestamp ^ ts_xor,
        )

    def to_uri(self) -> str:
        return base64.urlsafe_b64encode(self.to_raw()).decode("ascii").rstrip("=")


def generate_uri_checksum(sum_value: int, length: int, prefix: str = "") -> str:
    """Pad ``prefix`` with random characters until the segment checksums to ``sum_value``."""
    gen_len = length - len(prefix)
    if gen_len < URI_CHECKSUM_MIN_LEN:
        raise ValidationError("Prefix must be at least 5 bytes smaller than total length")
    while True:
        candidate = prefix + random_alphanumeric(gen_len)
        if checksum8(candidate) == sum_value:
            return candidate


def generate_uri_uuid(sum_value: int, uuid: PayloadUUID, length: Optional[int] = None) -> str:
    """Return ``/<segment>`` where the segment starts with the encoded UUID."""
    if length is None:
        length = random_between(URI_CHECKSUM_UUID_MIN_LEN, URI_CHECKSUM_CONN_MAX_LEN - 1)
    else:
        length -= 1
    if length < URI_CHECKSUM_UUID_MIN_LEN:
        raise ValidationError(f"Length must be {URI_CHECKSUM_UUID_MIN_LEN + 1} bytes or greater")
    return "/" + generate_uri_checksum(sum_value, length, uuid.to_uri())
