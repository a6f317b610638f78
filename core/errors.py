"""Exception hierarchy for hue-sync.

This module contains:
- TransportError and its subclasses: failures talking to the bridge
- CommandError and its subclasses: terminal command failures for callers
  that prefer exceptions over inspecting a CommandOutcome
- ConfigError, PairingError: configuration and link-button pairing failures
"""


class HueSyncError(Exception):
    """Base class for all hue-sync errors."""


class ConfigError(HueSyncError):
    """Invalid configuration value."""


class TransportError(HueSyncError):
    """A request to the bridge failed.

    Subclasses say whether the failure is transient. Only transient send
    failures are retried; sends are not idempotent, so anything else is
    surfaced immediately.
    """

    transient = False

    @property
    def is_transient(self) -> bool:
        return self.transient


class TransportTimeout(TransportError):
    """The bridge did not answer within the transport deadline."""

    transient = True


class ConnectionRefused(TransportError):
    """The bridge could not be reached."""

    transient = True


class HttpStatusError(TransportError):
    """The bridge answered with an error status or an error body."""

    def __init__(self, status_code: int, description: str = ''):
        self.status_code = status_code
        self.description = description
        message = f"HTTP {status_code}"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        # 429 is the bridge shedding load, not a bad request
        return self.status_code >= 500 or self.status_code == 429


class CommandError(HueSyncError):
    """A command did not reach the state it asked for."""

    def __init__(self, message: str = '', correlation_token: str | None = None):
        self.correlation_token = correlation_token
        super().__init__(message)


class CommandRejected(CommandError):
    """The command was refused before or at submission."""

    def __init__(self, reason: str, correlation_token: str | None = None):
        self.reason = reason
        super().__init__(reason, correlation_token)


class ValidationError(CommandRejected):
    """The attribute delta is malformed or out of range."""


class CommandTimedOut(CommandError):
    """The bridge accepted the command but the state never converged."""


class CommandCancelled(CommandError):
    """The caller cancelled the command, or the engine shut down."""


class PairingError(HueSyncError):
    """Link-button pairing with the bridge failed."""


class LinkButtonNotPressed(PairingError):
    """The bridge refused pairing because the link button was not pressed."""
