"""
Error classes for kubestage.

These error types classify failures at phase boundaries:
- User errors (PreflightFailure, NotBootstrapped, StoreCorrupted, ConfigError):
  recoverable by user action, halt immediately, exit code 2
- TransientRemoteFailure: timeouts and unreachable targets, retried within the
  operation's budget and escalated afterwards
- RemoteCommandFailed / PartialCompletion: a remote operation definitively
  failed on some or all of its targets
- Unrecoverable: a destructive operation failed mid-way; carries the exact
  command the user should run to finish by hand
- AbortRequested: the user interrupted the run

Each class carries a ``kind`` used to label PhaseOutcomes and pick CLI exit
codes.
"""

from typing import Optional, Sequence


class KubestageError(Exception):
    """Base exception for kubestage."""

    kind = "error"


class ConfigError(KubestageError):
    """Configuration validation error."""

    kind = "user"


class PipelineDefinitionError(KubestageError):
    """Phases are listed in an order that contradicts their dependencies."""

    kind = "user"


class NotBootstrapped(KubestageError):
    """
    The durable state file does not exist yet.

    Distinct from StoreCorrupted: the user simply has not run the phase that
    creates the store.
    """

    kind = "user"

    def __init__(self, path, first_phase: str = "init"):
        self.path = path
        self.first_phase = first_phase
        super().__init__(
            f"State file not found: {path}. "
            f"Run 'kubestage {first_phase}' first."
        )


class StoreCorrupted(KubestageError):
    """The state file exists but a line cannot be parsed."""

    kind = "user"

    def __init__(self, path, line_no: int, line: str):
        self.path = path
        self.line_no = line_no
        self.line = line
        super().__init__(f"{path}:{line_no}: cannot parse {line.strip()!r}")


class PreflightFailure(KubestageError):
    """A phase requirement is missing or misconfigured."""

    kind = "preflight"

    def __init__(self, result):
        self.result = result
        message = f"{result.name}: {result.detail}"
        if result.hint:
            message += f" (hint: {result.hint})"
        super().__init__(message)


class TransientRemoteFailure(KubestageError):
    """
    Transient remote failure - the operation may succeed if retried later.

    Examples:
    - SSH connection refused while an instance boots
    - Command exceeded its timeout
    - AWS endpoint temporarily unavailable or throttling
    """

    kind = "transient"

    def __init__(self, operation: str, target: Optional[str] = None, detail: str = ""):
        self.operation = operation
        self.target = target
        self.detail = detail
        where = f" on {target}" if target else ""
        super().__init__(f"{operation}{where}: {detail}" if detail else f"{operation}{where}")


class TargetUnreachable(TransientRemoteFailure):
    """The target stayed unreachable past its unreachability timeout."""


class PollTimeout(TransientRemoteFailure):
    """A bounded poll never observed the expected state before its deadline."""


class RemoteCommandFailed(KubestageError):
    """
    A remote operation definitively failed.

    Carries the per-target split so that a resumed run can be scoped
    correctly.
    """

    kind = "error"

    def __init__(
        self,
        operation: str,
        failed: dict,
        succeeded: Sequence[str] = (),
    ):
        self.operation = operation
        self.failed = dict(failed)
        self.succeeded = list(succeeded)
        details = "; ".join(f"{name}: {detail}" for name, detail in self.failed.items())
        super().__init__(f"{operation} failed ({details})")

    @property
    def failed_targets(self) -> list[str]:
        return list(self.failed)

    @property
    def succeeded_targets(self) -> list[str]:
        return list(self.succeeded)


class PartialCompletion(RemoteCommandFailed):
    """Some but not all targets reached the desired state."""

    kind = "partial"

    def __init__(self, operation: str, failed: dict, succeeded: Sequence[str]):
        super().__init__(operation, failed, succeeded)
        self.args = (
            f"{operation} incomplete: succeeded on {', '.join(self.succeeded) or 'none'}; "
            f"pending on {', '.join(self.failed)}",
        )


class Unrecoverable(KubestageError):
    """A destructive operation failed mid-way and needs manual completion."""

    kind = "unrecoverable"

    def __init__(self, message: str, remediation: str):
        self.remediation = remediation
        super().__init__(f"{message}. To finish manually run: {remediation}")


class AbortRequested(KubestageError):
    """The user requested an abort."""

    kind = "cancelled"

    def __init__(self, where: str = ""):
        super().__init__(f"Aborted by user{' during ' + where if where else ''}")
