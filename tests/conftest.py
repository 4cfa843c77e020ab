"""Shared fixtures: a scripted in-memory agent behind the request channel."""

import threading
from types import SimpleNamespace

import pytest

from agentcore.config import CoreConfig
from agentcore.core import ClientCore
from agentcore.errors import ChannelError
from agentcore.protocol import (
    CORE_ENUMEXTCMD,
    CORE_LOADLIB,
    CORE_MIGRATE,
    TLV_TYPE_DATA,
    TLV_TYPE_METHOD,
    TLV_TYPE_STRING,
    Request,
    Response,
)
from agentcore.session import AgentSession, Architecture, OSFamily, TransportState

STDAPI_COMMANDS = ["stdapi_fs_ls", "stdapi_sys_process_get_processes"]
PRIV_COMMANDS = ["priv_elevate_getsystem"]


class FakeChannel:
    """
    Records every request and answers like a minimal agent.

    Uploaded images are matched against ``images`` to decide which module
    got loaded; ``overrides`` replaces the answer for a whole command.
    """

    def __init__(self):
        self.sent = []
        self.images = {}
        self.loaded = {}
        self.overrides = {}

    def create_request(self, method):
        return Request(method)

    def send(self, request):
        self.sent.append((request, False, None))

    def send_and_await(self, request, timeout):
        self.sent.append((request, True, timeout))
        override = self.overrides.get(request.method)
        if override is not None:
            return override(request) if callable(override) else override

        if request.method == CORE_ENUMEXTCMD:
            name = request.get_value(TLV_TYPE_STRING)
            return Response(0, {TLV_TYPE_STRING: list(self.loaded.get(name, []))})
        if request.method == CORE_LOADLIB:
            name, commands = self.images.get(request.get_value(TLV_TYPE_DATA), (None, []))
            if name is None:
                return Response(1)
            self.loaded[name] = commands
            return Response(0, {TLV_TYPE_METHOD: list(commands)})
        if request.method == CORE_MIGRATE:
            # The new process has nothing loaded
            self.loaded = {}
            return Response(0)
        return Response(0)

    def methods(self):
        return [request.method for request, _, _ in self.sent]

    def requests(self, method):
        return [request for request, _, _ in self.sent if request.method == method]


class FakeHost:
    def __init__(self, pid=100, processes=None, env=None, dirs=("/tmp",)):
        self.pid = pid
        self.processes = processes if processes is not None else []
        self.env = env or {}
        self.dirs = set(dirs)

    def list_processes(self):
        return list(self.processes)

    def get_pid(self):
        return self.pid

    def stat(self, path):
        return SimpleNamespace(is_directory=path in self.dirs)

    def get_env(self, name):
        return self.env.get(name)


class FakeLink:
    def __init__(self, hang=False):
        self.calls = []
        self.hang = hang
        self.release = threading.Event()
        self.cert_der = b"controller-certificate"

    def swap_to_plain(self):
        self.calls.append("plain")
        return None

    def swap_to_tls(self):
        self.calls.append("tls")
        if self.hang:
            self.release.wait(5)
        return "fresh-context"


class FakeReader:
    def __init__(self):
        self.calls = []

    def stop(self):
        self.calls.append("stop")

    def start(self):
        self.calls.append("start")


WINDOWS_PROCESSES = [
    {"pid": 100, "arch": "x86", "name": "agent.exe"},
    {"pid": 200, "arch": "x64", "name": "explorer.exe"},
    {"pid": 300, "arch": "", "name": "lsass.exe"},
]


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    for suffix in ("x86.dll", "x64.dll", "lso"):
        (d / f"ext_server_stdapi.{suffix}").write_bytes(b"stdapi-" + suffix.encode())
        (d / f"ext_server_priv.{suffix}").write_bytes(b"priv-" + suffix.encode())
    (d / "metsrv.x86.dll").write_bytes(b"CORE-x86")
    (d / "metsrv.x64.dll").write_bytes(b"CORE-x64")
    return d


@pytest.fixture
def channel(data_dir):
    ch = FakeChannel()
    for suffix in ("x86.dll", "x64.dll", "lso"):
        ch.images[b"stdapi-" + suffix.encode()] = ("stdapi", STDAPI_COMMANDS)
        ch.images[b"priv-" + suffix.encode()] = ("priv", PRIV_COMMANDS)
    return ch


@pytest.fixture
def config(data_dir):
    return CoreConfig(data_dir=str(data_dir), handoff_grace=0, renegotiate_timeout=1.0)


@pytest.fixture
def session(channel):
    return AgentSession(
        channel,
        os_family=OSFamily.WINDOWS,
        arch=Architecture.X86,
        transport=TransportState(url="tcp://10.0.0.5:4444"),
        host=FakeHost(processes=list(WINDOWS_PROCESSES)),
        link=FakeLink(),
        reader=FakeReader(),
    )


@pytest.fixture
def core(session, config):
    return ClientCore(session, config, stager=lambda arch, image, patch: b"STAGER:" + image)


@pytest.fixture
def broken_channel():
    def fail(request):
        raise ChannelError("connection reset")
    return fail
