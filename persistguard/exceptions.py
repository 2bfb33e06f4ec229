"""Exception hierarchy for the persistence scanning engine."""

from typing import List, Optional, Sequence


class PersistGuardError(Exception):
    """Base class for all engine errors."""


class ConfigError(PersistGuardError):
    """Configuration file or value is invalid."""


class GatewayError(PersistGuardError):
    """An external command could not be run to completion."""

    def __init__(self, message: str, argv: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.argv = list(argv or [])


class CommandNotFoundError(GatewayError):
    pass


class CommandTimeoutError(GatewayError):
    def __init__(self, message: str, argv: Optional[Sequence[str]] = None, timeout: float = 0.0):
        super().__init__(message, argv)
        self.timeout = timeout


class CommandCancelledError(GatewayError):
    pass


class CommandPermissionError(GatewayError):
    pass


class ProbeError(PersistGuardError):
    """A probe failed. Non-fatal: the orchestrator records it and moves on.

    ``partial`` holds whatever the probe had already gathered.
    """

    def __init__(self, message: str, probe: str = "", partial: Optional[List] = None):
        super().__init__(message)
        self.probe = probe
        self.partial = list(partial or [])


class ParseError(PersistGuardError):
    """A single record did not match its grammar."""


class HashError(PersistGuardError):
    pass


class SignatureError(PersistGuardError):
    pass


class OrchestratorError(PersistGuardError):
    """A scan precondition failed; the whole scan is void."""
