"""
agentcore Protocol Definitions
Command names, typed-value kinds and fixed constants for the core command set.

The request channel owns the wire encoding; this module only names what the
core sends and expects back.

Design philosophy:
- Explicit kinds prevent ambiguity
- Constants live in one place so agents and controllers agree
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple

# Core commands
CORE_ENUMEXTCMD = "core_enumextcmd"
CORE_LOADLIB = "core_loadlib"
CORE_MACHINE_ID = "core_machine_id"
CORE_TRANSPORT_CHANGE = "core_transport_change"
CORE_TRANSPORT_SETCERTHASH = "core_transport_setcerthash"
CORE_TRANSPORT_GETCERTHASH = "core_transport_getcerthash"
CORE_MIGRATE = "core_migrate"
CORE_SHUTDOWN = "core_shutdown"

# Meta types of typed values
META_TYPE_STRING = 1 << 16
META_TYPE_UINT = 1 << 17
META_TYPE_RAW = 1 << 18
META_TYPE_QWORD = 1 << 20

# Typed-value kinds
TLV_TYPE_METHOD = META_TYPE_STRING | 1
TLV_TYPE_STRING = META_TYPE_STRING | 10
TLV_TYPE_FLAGS = META_TYPE_UINT | 7
TLV_TYPE_DATA = META_TYPE_RAW | 52

TLV_TYPE_LIBRARY_PATH = META_TYPE_STRING | 400
TLV_TYPE_TARGET_PATH = META_TYPE_STRING | 401
TLV_TYPE_MIGRATE_PID = META_TYPE_UINT | 402
TLV_TYPE_MIGRATE_LEN = META_TYPE_UINT | 403
TLV_TYPE_MIGRATE_PAYLOAD = META_TYPE_RAW | 404
TLV_TYPE_MIGRATE_ARCH = META_TYPE_UINT | 405
TLV_TYPE_MIGRATE_BASE_ADDR = META_TYPE_UINT | 407
TLV_TYPE_MIGRATE_ENTRY_POINT = META_TYPE_UINT | 408
TLV_TYPE_MIGRATE_SOCKET_PATH = META_TYPE_STRING | 409

TLV_TYPE_TRANS_TYPE = META_TYPE_UINT | 430
TLV_TYPE_TRANS_URL = META_TYPE_STRING | 431
TLV_TYPE_TRANS_UA = META_TYPE_STRING | 432
TLV_TYPE_TRANS_COMMS_TIMEOUT = META_TYPE_UINT | 433
TLV_TYPE_TRANS_SESSION_EXP = META_TYPE_UINT | 434
TLV_TYPE_TRANS_CERT_HASH = META_TYPE_RAW | 435
TLV_TYPE_TRANS_PROXY_INFO = META_TYPE_STRING | 436
TLV_TYPE_TRANS_PROXY_USER = META_TYPE_STRING | 437
TLV_TYPE_TRANS_PROXY_PASS = META_TYPE_STRING | 438

TLV_TYPE_MACHINE_ID = META_TYPE_STRING | 460

# Library load flags (wire representation of LoadOptions)
LOAD_LIBRARY_FLAG_ON_DISK = 1 << 0
LOAD_LIBRARY_FLAG_EXTENSION = 1 << 1
LOAD_LIBRARY_FLAG_LOCAL = 1 << 2

# Transport kinds as understood by the agent
TRANSPORT_TLS = 0
TRANSPORT_HTTP = 1
TRANSPORT_HTTPS = 2

# Migration architecture values
PROCESS_ARCH_X86 = 1
PROCESS_ARCH_X64 = 2

# Load address of the linux bootstrap image
MIGRATE_BASE_ADDR = 0x20040000

DEFAULT_COMMS_TIMEOUT = 300
DEFAULT_SESSION_EXPIRATION = 24 * 3600 * 7
DEFAULT_USER_AGENT = "Mozilla/4.0 (compatible; MSIE 6.1; Windows NT)"

UNIX_PATH_MAX = 108
# Rendezvous path compiled into the linux bootstrap artifact
DEFAULT_SOCK_PATH = "/tmp/meterpreter.sock"

# Collaborator interfaces (duck typed):
#
# channel.create_request(method) -> request
# request.add_value(kind, value, compress=False)
# channel.send(request) -> None
# channel.send_and_await(request, timeout) -> response or None
#     raises ChannelError (or OSError) when the round trip itself fails
# response.result -> int, 0 on success
# response.get_value(kind) -> first value or None
# response.each_value(kind) -> iterator of values
#
# host.list_processes() -> [{"pid": 4, "arch": "x64", "name": "svchost.exe"}]
# host.get_pid() -> int
# host.stat(path) -> object with .is_directory
# host.get_env(name) -> str or None
#
# link.swap_to_plain() -> None
# link.swap_to_tls() -> new encryption context
#
# reader.stop() / reader.start()


class Request:
    """A named command plus the typed values attached to it."""

    def __init__(self, method: str):
        self.method = method
        self.values: List[Tuple[int, Any, bool]] = []

    def add_value(self, kind: int, value: Any, compress: bool = False):
        self.values.append((kind, value, compress))

    def get_value(self, kind: int) -> Optional[Any]:
        for k, value, _ in self.values:
            if k == kind:
                return value
        return None

    def has_value(self, kind: int) -> bool:
        return any(k == kind for k, _, _ in self.values)

    def is_compressed(self, kind: int) -> bool:
        for k, _, compress in self.values:
            if k == kind:
                return compress
        return False

    def __repr__(self):
        return f"Request({self.method!r}, {len(self.values)} values)"


class Response:
    """Result code plus typed values returned for a request."""

    def __init__(self, result: int = 0, values: Optional[Dict[int, List[Any]]] = None):
        self.result = result
        self.values = values or {}

    def get_value(self, kind: int) -> Optional[Any]:
        found = self.values.get(kind)
        return found[0] if found else None

    def each_value(self, kind: int) -> Iterator[Any]:
        return iter(self.values.get(kind, []))
