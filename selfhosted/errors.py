"""Error taxonomy for deployments.

Every error carries a short ``kind`` used as the failure reason of a session
and in API responses.
"""


class SelfhostedError(Exception):
    kind = "Error"


class AuthError(SelfhostedError):
    """Provider credentials could not be resolved or were rejected."""

    kind = "AuthError"


class UpstreamError(SelfhostedError):
    """Provider API unavailable or returned an unexpected response."""

    kind = "UpstreamError"


class NoMatchingSize(SelfhostedError):
    kind = "NoMatchingSize"


class ProvisionError(SelfhostedError):
    kind = "ProvisionError"


class ProvisionTimeout(SelfhostedError):
    kind = "ProvisionTimeout"


class SSHUnreachable(SelfhostedError):
    kind = "SSHUnreachable"


class ConnectError(SelfhostedError):
    """A single SSH connection attempt failed."""

    kind = "ConnectError"


class CommandError(SelfhostedError):
    """Remote command exited non-zero."""

    kind = "CommandError"

    def __init__(self, command: str, exit_status: int, output: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        super().__init__(f"Command failed with exit status {exit_status}: {command}")


class NoOpFailure(SelfhostedError):
    """DNS or TLS failed after the app was installed."""

    kind = "NoOpFailure"

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step} failed: {message}")


class InvalidTransition(SelfhostedError):
    kind = "InvalidTransition"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from '{current}' to '{target}'")


class Cancelled(SelfhostedError):
    kind = "Cancelled"
