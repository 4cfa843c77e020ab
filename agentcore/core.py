"""
agentcore Client Core
The "core" command set of an agent session.

Responsibilities:
- Extension loading (delegated to ExtensionLoader)
- Transport changes and certificate pinning (TransportManager)
- Process migration (MigrationOrchestrator)
- Session lifecycle: machine id and shutdown
"""

from typing import List, Optional

import structlog

from .artifacts import ArtifactStore, Stager, StubFactory
from .config import CoreConfig
from .crypto import machine_id_digest
from .errors import ProtocolError
from .extensions import ExtensionLoader, LoadOptions
from .migration import MigrationOrchestrator
from .protocol import CORE_MACHINE_ID, CORE_SHUTDOWN, TLV_TYPE_MACHINE_ID
from .session import AgentSession
from .transport import TransportManager, TransportOptions, valid_transport

logger = structlog.get_logger()


class ClientCore:
    def __init__(self, session: AgentSession, config: Optional[CoreConfig] = None,
                 stager: Optional[Stager] = None):
        self.session = session
        self.config = config or CoreConfig()
        self.store = ArtifactStore(self.config.data_dir)
        self.extensions = ExtensionLoader(session, self.store, self.config)
        self.transports = TransportManager(session, self.config)
        self.migration = MigrationOrchestrator(
            session, self.extensions, StubFactory(self.store, stager), self.config
        )

    # Extensions

    def list_commands(self, name: str) -> List[str]:
        return self.extensions.list_commands(name)

    def load_library(self, options: LoadOptions) -> List[str]:
        return self.extensions.load_library(options)

    def use(self, name: str, extension_path: Optional[str] = None,
            load_from_disk: bool = False) -> bool:
        return self.extensions.use(name, extension_path, load_from_disk)

    # Transports

    def valid_transport(self, name: Optional[str]) -> bool:
        return valid_transport(name)

    def change_transport(self, options: TransportOptions) -> bool:
        return self.transports.change_transport(options)

    def enable_cert_pin(self) -> Optional[bytes]:
        return self.transports.enable_cert_pin()

    def disable_cert_pin(self) -> Optional[bool]:
        return self.transports.disable_cert_pin()

    def get_cert_pin(self) -> Optional[bytes]:
        return self.transports.get_cert_pin()

    # Migration

    def migrate(self, pid: int, writable_dir: Optional[str] = None) -> bool:
        return self.migration.migrate(pid, writable_dir)

    # Lifecycle

    def machine_id(self) -> str:
        """Return a digest of the agent's machine identifier."""
        request = self.session.create_request(CORE_MACHINE_ID)
        response = self.session.send_and_await(request, self.config.response_timeout)
        if response is None or response.get_value(TLV_TYPE_MACHINE_ID) is None:
            raise ProtocolError(f"No machine id was received to the {CORE_MACHINE_ID} request")
        return machine_id_digest(response.get_value(TLV_TYPE_MACHINE_ID))

    def shutdown(self) -> bool:
        """
        Tell the agent to exit.

        A polling agent only sees the command on its next check-in, so wait
        for the acknowledgement before the caller tears down the handler.
        """
        request = self.session.create_request(CORE_SHUTDOWN)
        if self.session.transport.passive:
            self.session.send_and_await(request, self.config.shutdown_wait)
        else:
            self.session.send(request)
        logger.info("Shutdown requested", passive=self.session.transport.passive)
        return True
