"""Tests for the migration state machine."""

import struct

import pytest

from agentcore import migration
from agentcore.core import ClientCore
from agentcore.errors import FatalSessionError, PlatformError, ProtocolError, ValidationError
from agentcore.migration import patch_socket_path
from agentcore.protocol import (
    CORE_ENUMEXTCMD,
    CORE_LOADLIB,
    CORE_MIGRATE,
    DEFAULT_SOCK_PATH,
    MIGRATE_BASE_ADDR,
    PROCESS_ARCH_X64,
    PROCESS_ARCH_X86,
    TLV_TYPE_DATA,
    TLV_TYPE_MIGRATE_ARCH,
    TLV_TYPE_MIGRATE_BASE_ADDR,
    TLV_TYPE_MIGRATE_ENTRY_POINT,
    TLV_TYPE_MIGRATE_LEN,
    TLV_TYPE_MIGRATE_PAYLOAD,
    TLV_TYPE_MIGRATE_PID,
    TLV_TYPE_MIGRATE_SOCKET_PATH,
    TRANSPORT_HTTPS,
    Response,
)
from agentcore.session import (
    AgentSession,
    Architecture,
    OSFamily,
    ProxyConfig,
    TransportState,
)

from conftest import STDAPI_COMMANDS, FakeHost, FakeLink, FakeReader

ELF_ENTRY = 0x20040123


def make_bootstrap(placeholder=True):
    header = b"\x7fELF" + bytes([1, 1, 1]) + b"\x00" * 17 + struct.pack("<I", ELF_ENTRY)
    body = DEFAULT_SOCK_PATH.encode() + b"\x00" * 120 if placeholder else b"\x00" * 140
    return header + b"\x00" * 32 + body + b"TRAILER"


@pytest.fixture
def linux_session(channel, data_dir):
    (data_dir / "msflinker_linux_x86.bin").write_bytes(make_bootstrap())
    return AgentSession(
        channel,
        os_family=OSFamily.LINUX,
        arch=Architecture.X86,
        transport=TransportState(url="tcp://10.0.0.5:4444"),
        host=FakeHost(processes=[
            {"pid": 100, "arch": "", "name": "agent"},
            {"pid": 555, "arch": "", "name": "sshd"},
        ]),
        link=FakeLink(),
        reader=FakeReader(),
    )


@pytest.fixture
def linux_core(linux_session, config):
    return ClientCore(linux_session, config)


class TestWindowsMigration:
    def test_persistent_happy_path(self, core, session, channel):
        assert core.migrate(200) is True

        assert channel.methods() == [
            CORE_ENUMEXTCMD, CORE_LOADLIB, CORE_MIGRATE, CORE_ENUMEXTCMD, CORE_LOADLIB,
        ]
        request, awaited, timeout = channel.sent[2]
        assert awaited and timeout == 60
        assert request.get_value(TLV_TYPE_MIGRATE_PID) == 200
        assert request.get_value(TLV_TYPE_MIGRATE_PAYLOAD) == b"STAGER:CORE-x64"
        assert request.get_value(TLV_TYPE_MIGRATE_LEN) == len(b"STAGER:CORE-x64")
        assert request.get_value(TLV_TYPE_MIGRATE_ARCH) == PROCESS_ARCH_X64
        assert not request.has_value(TLV_TYPE_MIGRATE_SOCKET_PATH)

        assert session.link.calls == ["plain", "tls"]
        assert session.reader.calls == ["stop", "start"]
        assert session.encryption == "fresh-context"

        assert session.platform_tag == "x64/windows"
        assert session.binary_suffix == "x64.dll"
        reload = channel.requests(CORE_LOADLIB)[-1]
        assert reload.get_value(TLV_TYPE_DATA) == b"stdapi-x64.dll"
        assert session.extensions == {"stdapi": STDAPI_COMMANDS}
        assert session.keep_alive is True
        assert session.alive

    def test_reloads_every_module(self, core, session, channel):
        core.use("priv")
        core.migrate(200)
        assert sorted(session.extensions) == ["priv", "stdapi"]
        reloaded = [r.get_value(TLV_TYPE_DATA) for r in channel.requests(CORE_LOADLIB)[-2:]]
        assert sorted(reloaded) == [b"priv-x64.dll", b"stdapi-x64.dll"]

    def test_self_migration_rejected(self, core, session, channel):
        with pytest.raises(ValidationError, match="current process"):
            core.migrate(100)
        assert channel.methods() == [CORE_ENUMEXTCMD, CORE_LOADLIB]
        assert session.keep_alive is True

    def test_self_migration_with_stdapi_loaded_sends_nothing(self, core, session, channel):
        session.extensions["stdapi"] = STDAPI_COMMANDS
        with pytest.raises(ValidationError):
            core.migrate(100)
        assert channel.sent == []

    def test_unknown_process(self, core, channel):
        with pytest.raises(ValidationError, match="non existent"):
            core.migrate(4242)
        assert CORE_MIGRATE not in channel.methods()

    def test_insufficient_privileges(self, core, channel):
        with pytest.raises(ValidationError, match="insufficient privileges"):
            core.migrate(300)
        assert CORE_MIGRATE not in channel.methods()

    def test_unsupported_architecture(self, core, session, channel):
        session.host.processes.append({"pid": 400, "arch": "armle", "name": "odd.exe"})
        with pytest.raises(ValidationError, match="Unsupported target architecture"):
            core.migrate(400)
        assert CORE_MIGRATE not in channel.methods()

    def test_rejected_by_agent(self, core, session, channel):
        channel.overrides[CORE_MIGRATE] = Response(87)
        with pytest.raises(ProtocolError):
            core.migrate(200)
        assert session.keep_alive is True
        assert session.alive
        assert session.reader.calls == []

    def test_no_response(self, core, channel):
        channel.overrides[CORE_MIGRATE] = lambda request: None
        with pytest.raises(ProtocolError):
            core.migrate(200)

    def test_compressed_payload(self, core, session, channel):
        session.capabilities.zlib = True
        core.migrate(200)
        assert channel.requests(CORE_MIGRATE)[0].is_compressed(TLV_TYPE_MIGRATE_PAYLOAD)

    def test_keep_alive_suspended_during_migration(self, core, session, channel):
        seen = []

        def record(request):
            seen.append(session.keep_alive)
            channel.loaded = {}
            return Response(0)
        channel.overrides[CORE_MIGRATE] = record

        core.migrate(200)
        assert seen == [False]
        assert session.keep_alive is True


class TestPollingMigration:
    @pytest.fixture
    def polling(self, session):
        session.transport = TransportState(
            kind=TRANSPORT_HTTPS, passive=True, url="https://10.0.0.5:443/abc/",
            comms_timeout=300, expiration=604800, user_agent="UA",
            proxy=ProxyConfig("10.1.1.1", 8080, user="bob"),
        )
        return session

    def test_grace_window_and_patching(self, polling, config, channel, monkeypatch):
        patches = []
        sleeps = []
        monkeypatch.setattr(migration.time, "sleep", lambda seconds: sleeps.append(seconds))
        config.handoff_grace = 5.0

        def stager(arch, image, patch):
            patches.append((arch, patch))
            return b"PATCHED:" + image

        core = ClientCore(polling, config, stager=stager)
        assert core.migrate(200) is True

        assert sleeps == [5.0]
        arch, patch = patches[0]
        assert arch is Architecture.X64
        assert patch["ssl"] is True
        assert patch["url"] == "https://10.0.0.5:443/abc/"
        assert patch["expiration"] == 604800
        assert patch["comm_timeout"] == 300
        assert patch["ua"] == "UA"
        assert patch["proxy_host"] == "10.1.1.1"
        assert patch["proxy_user"] == "bob"

        assert polling.reader.calls == []
        assert polling.link.calls == []
        assert polling.binary_suffix == "x64.dll"


class TestLinuxMigration:
    def test_happy_path(self, linux_core, linux_session, channel, data_dir):
        original = make_bootstrap()
        assert linux_core.migrate(555) is True

        request = channel.requests(CORE_MIGRATE)[0]
        socket_path = request.get_value(TLV_TYPE_MIGRATE_SOCKET_PATH)
        name = socket_path[len("/tmp/"):]
        assert socket_path.startswith("/tmp/")
        assert 5 <= len(name) <= 9 and name.isalpha() and name.islower()

        payload = request.get_value(TLV_TYPE_MIGRATE_PAYLOAD)
        assert len(payload) == len(original)
        pos = original.index(DEFAULT_SOCK_PATH.encode())
        assert payload[pos:pos + len(socket_path) + 1] == socket_path.encode() + b"\x00"
        assert payload.endswith(b"TRAILER")

        assert request.get_value(TLV_TYPE_MIGRATE_BASE_ADDR) == MIGRATE_BASE_ADDR
        assert request.get_value(TLV_TYPE_MIGRATE_ENTRY_POINT) == ELF_ENTRY
        assert request.get_value(TLV_TYPE_MIGRATE_ARCH) == PROCESS_ARCH_X86
        assert request.get_value(TLV_TYPE_MIGRATE_LEN) == len(original)

        assert linux_session.platform_tag == "x86/linux"
        assert linux_session.binary_suffix == "lso"
        assert channel.requests(CORE_LOADLIB)[-1].get_value(TLV_TYPE_DATA) == b"stdapi-lso"

    def test_tmpdir_from_environment(self, linux_core, linux_session, channel):
        linux_session.host.env["TMPDIR"] = "/var/tmp"
        linux_session.host.dirs.add("/var/tmp")
        linux_core.migrate(555)
        socket_path = channel.requests(CORE_MIGRATE)[0].get_value(TLV_TYPE_MIGRATE_SOCKET_PATH)
        assert socket_path.startswith("/var/tmp/")

    def test_missing_directory(self, linux_core, channel):
        with pytest.raises(ValidationError, match="/nope"):
            linux_core.migrate(555, "/nope")
        assert CORE_MIGRATE not in channel.methods()

    def test_path_limit(self, linux_core, linux_session, channel, monkeypatch):
        monkeypatch.setattr(migration, "random_between", lambda low, high: 5)

        # 102 + "/" + 5 characters = 108 bytes, one over the limit
        too_long = "/" + "d" * 101
        linux_session.host.dirs.add(too_long)
        monkeypatch.setattr(migration, "patch_socket_path",
                            lambda stub, path: pytest.fail("stub patched"))
        with pytest.raises(ValidationError, match="too long"):
            linux_core.migrate(555, too_long)
        assert CORE_MIGRATE not in channel.methods()

    def test_path_at_limit(self, linux_core, linux_session, channel, monkeypatch):
        monkeypatch.setattr(migration, "random_between", lambda low, high: 5)
        longest = "/" + "d" * 100
        linux_session.host.dirs.add(longest)

        assert linux_core.migrate(555, longest)
        socket_path = channel.requests(CORE_MIGRATE)[0].get_value(TLV_TYPE_MIGRATE_SOCKET_PATH)
        assert len(socket_path) == 107

    def test_corrupt_bootstrap(self, linux_core, channel, data_dir):
        (data_dir / "msflinker_linux_x86.bin").write_bytes(make_bootstrap(placeholder=False))
        with pytest.raises(ValidationError, match="Corrupt payload"):
            linux_core.migrate(555)
        assert CORE_MIGRATE not in channel.methods()


class TestPatchSocketPath:
    def test_length_preserved(self):
        stub = make_bootstrap()
        patched = patch_socket_path(stub, "/tmp/abcdefgh")
        assert len(patched) == len(stub)
        assert b"/tmp/abcdefgh\x00" in patched
        assert DEFAULT_SOCK_PATH.encode() not in patched

    def test_no_room(self):
        stub = b"header" + DEFAULT_SOCK_PATH.encode()
        with pytest.raises(ValidationError):
            patch_socket_path(stub, "/tmp/" + "x" * 40)


def test_unsupported_platform(channel, config):
    session = AgentSession(
        channel, os_family=OSFamily.OTHER, arch=Architecture.X86,
        host=FakeHost(processes=[{"pid": 7, "arch": "x86", "name": "p"}]),
    )
    session.extensions["stdapi"] = STDAPI_COMMANDS
    with pytest.raises(PlatformError):
        ClientCore(session, config).migrate(7)
    assert channel.sent == []


class TestRenegotiation:
    def test_timeout_kills_session(self, core, session, channel, config):
        config.renegotiate_timeout = 0.2
        session.link = FakeLink(hang=True)
        try:
            with pytest.raises(FatalSessionError):
                core.migrate(200)

            assert session.alive is False
            assert session.reader.calls == ["stop"]
            assert session.keep_alive is False
            assert session.encryption is None

            sent = len(channel.sent)
            with pytest.raises(FatalSessionError):
                core.use("priv")
            assert len(channel.sent) == sent
        finally:
            session.link.release.set()

    def test_link_error_kills_session(self, core, session):
        def broken():
            raise ConnectionResetError("handshake failed")
        session.link.swap_to_tls = broken

        with pytest.raises(FatalSessionError, match="handshake failed"):
            core.migrate(200)
        assert session.alive is False
        assert session.reader.calls == ["stop"]
