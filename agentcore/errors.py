"""
agentcore error taxonomy.

Everything raised by the core derives from AgentCoreError so the owning
session manager can catch it in one place.
"""


class AgentCoreError(Exception):
    """Base class for core command failures."""


class ValidationError(AgentCoreError):
    """Bad caller input or a precondition the agent cannot satisfy."""


class PlatformError(ValidationError):
    """The agent's platform does not support the requested operation."""


class ProtocolError(AgentCoreError):
    """Missing or failed response to a command that requires one."""


class IoError(AgentCoreError):
    """A local artifact could not be read."""


class FatalSessionError(AgentCoreError):
    """The session is dead; no further requests can be sent."""


class ChannelError(AgentCoreError):
    """Raised by request channels when a round trip cannot complete."""
