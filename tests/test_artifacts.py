"""Tests for artifact lookup and stub helpers."""

import struct

import pytest

from agentcore.artifacts import ArtifactStore, StubFactory, elf_entry_point
from agentcore.errors import IoError, PlatformError, ValidationError
from agentcore.session import Architecture


class TestArtifactStore:
    def test_extension_lookup(self, data_dir):
        store = ArtifactStore(str(data_dir))
        assert store.extension_path("STDAPI", "x64.dll") == str(data_dir / "ext_server_stdapi.x64.dll")
        assert store.extension_path("kiwi", "x64.dll") is None

    def test_read_missing(self, tmp_path):
        with pytest.raises(IoError):
            ArtifactStore(str(tmp_path)).read(str(tmp_path / "nope"))


class TestStubFactory:
    def test_stager_receives_core_image(self, data_dir):
        calls = []
        factory = StubFactory(ArtifactStore(str(data_dir)),
                              lambda arch, image, patch: calls.append((arch, image, patch)) or b"X")
        assert factory.build_stager_stub(Architecture.X86, {"url": "u"}) == b"X"
        assert calls == [(Architecture.X86, b"CORE-x86", {"url": "u"})]

    def test_missing_core_image(self, tmp_path):
        factory = StubFactory(ArtifactStore(str(tmp_path)), lambda *a: b"")
        with pytest.raises(ValidationError, match="metsrv.x64.dll"):
            factory.build_stager_stub(Architecture.X64)

    def test_no_stager(self, data_dir):
        with pytest.raises(PlatformError):
            StubFactory(ArtifactStore(str(data_dir))).build_stager_stub(Architecture.X64)

    def test_missing_bootstrap(self, data_dir):
        with pytest.raises(IoError):
            StubFactory(ArtifactStore(str(data_dir))).load_bootstrap()


class TestElfEntryPoint:
    def test_elf32_little_endian(self):
        blob = b"\x7fELF\x01\x01\x01" + b"\x00" * 17 + struct.pack("<I", 0x08048080)
        assert elf_entry_point(blob) == 0x08048080

    def test_elf64_big_endian(self):
        blob = b"\x7fELF\x02\x02\x01" + b"\x00" * 17 + struct.pack(">Q", 0x400000)
        assert elf_entry_point(blob) == 0x400000

    @pytest.mark.parametrize("blob", [
        b"MZ" + b"\x00" * 40,
        b"\x7fELF\x03\x01" + b"\x00" * 30,
        b"\x7fELF\x02\x01\x01" + b"\x00" * 20,
    ])
    def test_rejects_bad_images(self, blob):
        with pytest.raises(ValidationError):
            elf_entry_point(blob)
