"""
agentcore configuration.

Defaults match what deployed agents expect; every value can be overridden
through AGENTCORE_* environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import ValidationError

ENV_PREFIX = "AGENTCORE_"


def _default_data_dir() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")


@dataclass
class CoreConfig:
    data_dir: str = field(default_factory=_default_data_dir)
    response_timeout: float = 300.0
    migrate_timeout: float = 60.0
    renegotiate_timeout: float = 60.0
    handoff_grace: float = 5.0
    shutdown_wait: float = 10.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CoreConfig":
        """Build a config from the environment, falling back to defaults."""
        environ = os.environ if environ is None else environ
        config = cls()

        data_dir = environ.get(ENV_PREFIX + "DATA_DIR")
        if data_dir:
            config.data_dir = os.path.expanduser(data_dir)

        for name in ("response_timeout", "migrate_timeout", "renegotiate_timeout",
                     "handoff_grace", "shutdown_wait"):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            try:
                value = float(raw)
                if value < 0:
                    raise ValueError("must not be negative")
            except ValueError as e:
                raise ValidationError(f"Invalid {ENV_PREFIX}{name.upper()}={raw!r}: {e}") from e
            setattr(config, name, value)

        return config
