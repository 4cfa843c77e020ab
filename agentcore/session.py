"""
agentcore Agent Session
The per-agent state record every core command reads and mutates.

Responsibilities:
- Platform identity (OS family, architecture, suffix tags)
- Capability registry of loaded modules
- Transport state and negotiated capabilities
- Serialized, liveness-checked access to the request channel
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from .errors import FatalSessionError, ValidationError
from .protocol import TRANSPORT_TLS

logger = structlog.get_logger()


class OSFamily(Enum):
    WINDOWS = "windows"
    LINUX = "linux"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OSFamily":
        value = (value or "").lower()
        if "win" in value:
            return cls.WINDOWS
        if "linux" in value:
            return cls.LINUX
        return cls.OTHER


class Architecture(Enum):
    X86 = "x86"
    X64 = "x64"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Architecture"]:
        """Map an architecture string reported by the agent, None if unknown."""
        value = (value or "").lower()
        if value in ("x64", "x86_64", "amd64"):
            return cls.X64
        if value in ("x86", "i386", "i686"):
            return cls.X86
        return None


_PLATFORM_TAGS = {
    (OSFamily.WINDOWS, Architecture.X64): ("x64/windows", "x64.dll"),
    (OSFamily.WINDOWS, Architecture.X86): ("x86/windows", "x86.dll"),
}


def platform_tags(family: OSFamily, arch: Optional[Architecture]) -> Optional[Tuple[str, str]]:
    """
    Return (platform tag, binary suffix) for a family/architecture pair.

    Linux agents always run the x86 build. None means the family is not
    recognized and the caller keeps whatever tags it already has.
    """
    if family is OSFamily.LINUX:
        return ("x86/linux", "lso")
    return _PLATFORM_TAGS.get((family, arch))


@dataclass
class ProxyConfig:
    host: str
    port: int
    type: str = "http"
    user: Optional[str] = None
    password: Optional[str] = None


@dataclass
class TransportState:
    """The transport the agent is currently talking over."""
    kind: int = TRANSPORT_TLS
    passive: bool = False
    url: Optional[str] = None
    ssl: bool = True
    comms_timeout: Optional[int] = None
    expiration: Optional[int] = None
    user_agent: Optional[str] = None
    proxy: Optional[ProxyConfig] = None
    cert_path: Optional[str] = None

    @property
    def is_persistent_tls(self) -> bool:
        return self.kind == TRANSPORT_TLS and not self.passive and self.ssl


@dataclass
class Capabilities:
    zlib: bool = False


class AgentSession:
    """Represents a connected agent as seen by the core commands."""

    def __init__(
        self,
        channel: Any,
        os_family: OSFamily = OSFamily.WINDOWS,
        arch: Architecture = Architecture.X86,
        transport: Optional[TransportState] = None,
        host: Any = None,
        link: Any = None,
        reader: Any = None,
        payload_uuid: Any = None,
        capabilities: Optional[Capabilities] = None,
        on_module_registered: Optional[Callable[[str, List[str]], None]] = None,
    ):
        self.channel = channel
        self.host = host
        self.link = link
        self.reader = reader
        self.os_family = os_family
        self.arch = arch
        tags = platform_tags(os_family, arch) or (f"{arch.value}/{os_family.value}", "")
        self.platform_tag, self.binary_suffix = tags
        self.transport = transport or TransportState()
        self.capabilities = capabilities or Capabilities()
        self.payload_uuid = payload_uuid
        self.encryption: Any = None
        self.keep_alive = True
        self.alive = True
        self.comm_lock = threading.RLock()
        self.extensions: Dict[str, List[str]] = {}
        self.on_module_registered = on_module_registered

    def register_module(self, name: str, commands: List[str]):
        """Wire a module's commands into the registry, replacing any prior entry."""
        if not name:
            raise ValidationError("Module name is required")
        if not commands:
            raise ValidationError(f"Module {name} exposes no commands")
        name = name.lower()
        self.extensions[name] = list(commands)
        logger.info("Module registered", module=name, commands=len(commands))
        if self.on_module_registered is not None:
            self.on_module_registered(name, list(commands))

    def retag(self, family: OSFamily, arch: Optional[Architecture]):
        """Recompute platform tags, keeping the current ones for unknown families."""
        tags = platform_tags(family, arch)
        if tags is None:
            logger.warning("Unrecognized platform, keeping tags",
                           family=family.value, platform=self.platform_tag)
            return
        self.os_family = family
        if arch is not None:
            self.arch = arch
        self.platform_tag, self.binary_suffix = tags

    def create_request(self, method: str):
        return self.channel.create_request(method)

    def _check_alive(self, method: str):
        if not self.alive:
            raise FatalSessionError(f"Session is dead, refusing to send {method}")

    def send(self, request):
        """Transmit without waiting for a response."""
        with self.comm_lock:
            self._check_alive(getattr(request, "method", "request"))
            self.channel.send(request)

    def send_and_await(self, request, timeout: Optional[float] = None):
        """Transmit and block for the correlated response (None if none arrived)."""
        with self.comm_lock:
            self._check_alive(getattr(request, "method", "request"))
            return self.channel.send_and_await(request, timeout)

    def mark_dead(self, reason: str):
        self.alive = False
        logger.error("Session marked dead", reason=reason, platform=self.platform_tag)
