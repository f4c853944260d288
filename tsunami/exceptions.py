"""Custom exception hierarchy for Tsunami.

All tsunami-specific exceptions inherit from TsunamiError, enabling
users to catch all tsunami exceptions with a single except clause.

Errors raised while a fleet is being driven carry the lifecycle context
(group, instance id, address) so the final message names where the run
failed.
"""

from __future__ import annotations


class TsunamiError(Exception):
    """Base exception for all Tsunami errors."""

    def __init__(
        self,
        message: str,
        *,
        group: str | None = None,
        instance_id: str | None = None,
        address: str | None = None,
    ) -> None:
        self.message = message
        self.group = group
        self.instance_id = instance_id
        self.address = address
        super().__init__(message)

    @property
    def context(self) -> dict[str, str]:
        ctx = {"group": self.group, "instance_id": self.instance_id, "address": self.address}
        return {k: v for k, v in ctx.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        parts = " ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{parts}]"


class ConfigurationError(TsunamiError):
    """Raised for invalid configuration or missing required settings."""


class DuplicateGroupError(TsunamiError):
    """Raised when a group name is registered twice."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Group '{name}' is already registered", group=name)


class LaunchError(TsunamiError):
    """Raised when the provider rejects or partially fulfills a create request."""


class ReadinessQueryError(TsunamiError):
    """Raised when querying an instance's status fails while polling."""


class ReadinessTimeoutError(TsunamiError):
    """Raised when an instance does not become ready within the allowed wait."""


class DegradedInstanceError(ReadinessTimeoutError):
    """Raised when a running instance keeps reporting incomplete attributes."""


class InstanceTerminatedError(TsunamiError):
    """Raised when an instance reaches a terminal state before becoming ready."""

    def __init__(self, instance_id: str, state: str, *, group: str | None = None) -> None:
        self.state = state
        super().__init__(
            f"Instance {instance_id} reached terminal state '{state}'",
            group=group,
            instance_id=instance_id,
        )


class InvariantViolation(TsunamiError):  # noqa: N818
    """Raised when internal bookkeeping is inconsistent. Should never happen."""


class ConnectError(TsunamiError):
    """Raised when an SSH session cannot be opened or authenticated."""


class ExecError(TsunamiError):
    """Raised when a remote command cannot be executed to completion."""

    def __init__(self, message: str, command: str, **context: str | None) -> None:
        self.command = command
        super().__init__(message, **context)


class ChannelError(ExecError):
    """The SSH channel for the command could not be opened."""


class OutputReadError(ExecError):
    """The command ran but reading its output failed."""


class CommandIncompleteError(ExecError):
    """The command never reached a completed state."""


class CommandFailedError(ExecError):
    """The command completed with a non-zero exit status."""

    def __init__(self, command: str, exit_status: int, stderr: str, **context: str | None) -> None:
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(
            f"command '{command}' exited with status {exit_status}: {stderr.strip()}",
            command,
            **context,
        )


class SetupError(TsunamiError):
    """Raised when a group's setup routine fails on a machine."""


class WorkloadError(TsunamiError):
    """Raised when the caller's workload function fails."""


class RunDeadlineExceeded(TsunamiError):  # noqa: N818
    """Raised when a run exceeds its configured maximum duration."""


class TerminationWarning(TsunamiError, RuntimeWarning):
    """Teardown partially or completely failed. Never fatal to the run."""

    def __init__(self, message: str, instance_ids: tuple[str, ...] = ()) -> None:
        self.instance_ids = instance_ids
        super().__init__(message)
