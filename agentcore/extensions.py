"""
agentcore Extension Loader
Resolves, uploads and activates capability modules on a running agent.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

import structlog

from .artifacts import ArtifactStore
from .config import CoreConfig
from .crypto import random_digits
from .errors import ChannelError, ProtocolError, ValidationError
from .protocol import (
    CORE_ENUMEXTCMD,
    CORE_LOADLIB,
    LOAD_LIBRARY_FLAG_EXTENSION,
    LOAD_LIBRARY_FLAG_LOCAL,
    LOAD_LIBRARY_FLAG_ON_DISK,
    TLV_TYPE_DATA,
    TLV_TYPE_FLAGS,
    TLV_TYPE_LIBRARY_PATH,
    TLV_TYPE_METHOD,
    TLV_TYPE_STRING,
    TLV_TYPE_TARGET_PATH,
)
from .session import AgentSession

logger = structlog.get_logger()


@dataclass
class LoadOptions:
    """
    How a library gets onto the agent.

    Without ``upload`` the agent loads ``library_path`` from its own disk.
    ``save_to_disk`` and ``extension`` apply on top of either mode.
    """
    library_path: Optional[str]
    target_path: Optional[str] = None
    upload: bool = False
    save_to_disk: bool = False
    extension: bool = False

    def __post_init__(self):
        if not self.library_path:
            raise ValidationError("No library file path was supplied")

    @property
    def flags(self) -> int:
        flags = 0 if self.upload else LOAD_LIBRARY_FLAG_LOCAL
        if self.save_to_disk:
            flags |= LOAD_LIBRARY_FLAG_ON_DISK
        if self.extension:
            flags |= LOAD_LIBRARY_FLAG_EXTENSION
        return flags


class ExtensionLoader:
    def __init__(self, session: AgentSession, store: ArtifactStore,
                 config: Optional[CoreConfig] = None):
        self.session = session
        self.store = store
        self.config = config or CoreConfig()

    def list_commands(self, name: str) -> List[str]:
        """
        Ask the agent which commands of module ``name`` are already loaded.

        Agents too old to know the enumerate command either fail the round
        trip or answer with an error result; both mean "not loaded yet".
        """
        request = self.session.create_request(CORE_ENUMEXTCMD)
        request.add_value(TLV_TYPE_STRING, name)

        try:
            response = self.session.send_and_await(request, self.config.response_timeout)
        except (ChannelError, OSError) as e:
            logger.debug("Command enumeration failed", module=name, error=str(e))
            return []

        if response is None:
            raise ProtocolError(f"No response was received to the {CORE_ENUMEXTCMD} request")
        if response.result != 0:
            return []

        return list(response.each_value(TLV_TYPE_STRING))

    def load_library(self, options: LoadOptions) -> List[str]:
        """Load a library on the agent and return the commands it added."""
        library_path = options.library_path
        target_path = options.target_path
        request = self.session.create_request(CORE_LOADLIB)

        if options.upload:
            image = self.store.read(options.library_path)
            request.add_value(TLV_TYPE_DATA, image, compress=self.session.capabilities.zlib)

            # Extensions get a throwaway name on the remote side
            if options.extension:
                library_path = f"ext{random_digits(6)}.{self.session.binary_suffix}"
                target_path = library_path

        request.add_value(TLV_TYPE_LIBRARY_PATH, library_path)
        request.add_value(TLV_TYPE_FLAGS, options.flags)
        if target_path is not None:
            request.add_value(TLV_TYPE_TARGET_PATH, target_path)

        response = self.session.send_and_await(request, self.config.response_timeout)

        if response is None:
            raise ProtocolError(f"No response was received to the {CORE_LOADLIB} request")
        if response.result != 0:
            raise ProtocolError(
                f"The {CORE_LOADLIB} request failed with result: {response.result}"
            )

        commands = list(response.each_value(TLV_TYPE_METHOD))
        logger.info("Library loaded", path=library_path, flags=options.flags,
                    commands=len(commands))
        return commands

    def use(self, name: str, extension_path: Optional[str] = None,
            load_from_disk: bool = False) -> bool:
        """Make sure module ``name`` is active on the agent and registered locally."""
        if not name:
            raise ValidationError("No modules were specified")
        name = name.lower()

        commands = self.list_commands(name)

        if not commands:
            if extension_path:
                path = os.path.abspath(os.path.expanduser(extension_path))
            else:
                path = self.store.extension_path(name, self.session.binary_suffix)
            if path is None:
                raise ValidationError(
                    f"No module of the name ext_server_{name}.{self.session.binary_suffix} found"
                )

            commands = self.load_library(LoadOptions(
                library_path=path,
                upload=True,
                extension=True,
                save_to_disk=load_from_disk,
            ))
            if not commands:
                raise ProtocolError(f"Module {name} loaded but reported no commands")
        else:
            logger.debug("Module already active", module=name, commands=len(commands))

        self.session.register_module(name, commands)
        return True
