"""
Local artifact storage and migration stub construction.

Module and core binaries live in a data directory named
``<identifier>.<binary suffix>``. Building a reflective stager around the
core image is delegated to a stager callable; this module only finds the
right inputs for it and inspects what comes back.
"""

import os
import struct
from typing import Any, Callable, Dict, Optional

import structlog

from .errors import IoError, PlatformError, ValidationError
from .session import Architecture

logger = structlog.get_logger()

CORE_ARTIFACT = "metsrv"
EXTENSION_PREFIX = "ext_server_"
LINUX_BOOTSTRAP = "msflinker_linux_x86.bin"

_ARCH_SUFFIX = {Architecture.X86: "x86.dll", Architecture.X64: "x64.dll"}

Stager = Callable[[Architecture, bytes, Optional[Dict[str, Any]]], bytes]


class ArtifactStore:
    """Looks up agent binaries by name and suffix."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def path(self, name: str, suffix: str) -> Optional[str]:
        """Return the artifact path, or None when no such file exists."""
        candidate = os.path.join(self.data_dir, f"{name}.{suffix}")
        if os.path.isfile(candidate):
            return candidate
        return None

    def extension_path(self, module: str, suffix: str) -> Optional[str]:
        return self.path(EXTENSION_PREFIX + module.lower(), suffix)

    def read(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise IoError(f"Failed to read artifact {path}: {e}") from e


class StubFactory:
    """Produces the bytes that get injected into a migration target."""

    def __init__(self, store: ArtifactStore, stager: Optional[Stager] = None):
        self.store = store
        self.stager = stager

    def build_stager_stub(self, arch: Architecture,
                          patch_params: Optional[Dict[str, Any]] = None) -> bytes:
        """Wrap the core image for ``arch`` in a reflective stager."""
        suffix = _ARCH_SUFFIX.get(arch)
        if suffix is None:
            raise ValidationError(f"Unsupported target architecture '{arch}'")
        path = self.store.path(CORE_ARTIFACT, suffix)
        if path is None:
            raise ValidationError(f"{CORE_ARTIFACT}.{suffix} not found")
        if self.stager is None:
            raise PlatformError("No stager builder configured for windows migration")

        image = self.store.read(path)
        blob = self.stager(arch, image, patch_params)
        logger.debug("Stager built", arch=arch.value, size=len(blob),
                     patched=patch_params is not None)
        return blob

    def load_bootstrap(self) -> bytes:
        path = os.path.join(self.store.data_dir, LINUX_BOOTSTRAP)
        return self.store.read(path)

    def extract_entry_point(self, blob: bytes) -> int:
        return elf_entry_point(blob)


def elf_entry_point(blob: bytes) -> int:
    """Read e_entry from an ELF header (32 or 64 bit, either byte order)."""
    if len(blob) < 24 or blob[:4] != b"\x7fELF":
        raise ValidationError("Corrupt payload: not an ELF image")

    elf_class, elf_data = blob[4], blob[5]
    if elf_data == 1:
        order = "<"
    elif elf_data == 2:
        order = ">"
    else:
        raise ValidationError("Corrupt payload: unknown ELF byte order")

    if elf_class == 1:
        fmt, size = "I", 4
    elif elf_class == 2:
        fmt, size = "Q", 8
    else:
        raise ValidationError("Corrupt payload: unknown ELF class")

    if len(blob) < 24 + size:
        raise ValidationError("Corrupt payload: truncated ELF header")
    (entry,) = struct.unpack_from(order + fmt, blob, 24)
    return entry
