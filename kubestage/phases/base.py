"""
Base classes for provisioning phases.

A phase declares what it needs (requirements), how to tell it is already
done (check) and how to do it (run). PhaseRunner drives one phase through

    NOT_STARTED -> CHECKING -> SKIPPED
                            -> RUNNING -> SUCCEEDED | FAILED

and turns every exception into a FAILED outcome carrying its kind.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from kubestage.errors import (
    AbortRequested,
    KubestageError,
    PreflightFailure,
    RemoteCommandFailed,
    Unrecoverable,
)
from kubestage.preflight import CheckResult, CheckStatus, PreflightChecker, Requirement
from kubestage.remote import CommandResult, PollResult, RemoteExecutor, RunOptions, Target
from kubestage.tools import Toolbox

logger = logging.getLogger(__name__)


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    CHECKING = "checking"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PhaseOutcome:
    """Result of executing one phase."""

    phase: str
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    reason: Optional[str] = None
    new_facts: dict[str, str] = field(default_factory=dict)
    forgotten: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    operation: Optional[str] = None
    succeeded_targets: list[str] = field(default_factory=list)
    failed_targets: list[str] = field(default_factory=list)
    remediation: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (PhaseStatus.SUCCEEDED, PhaseStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "status": self.status.value,
            "reason": self.reason,
            "new_facts": sorted(self.new_facts),
            "forgotten": self.forgotten,
            "error": self.error,
            "error_kind": self.error_kind,
            "operation": self.operation,
            "succeeded_targets": self.succeeded_targets,
            "failed_targets": self.failed_targets,
            "remediation": self.remediation,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseOutcome":
        # Fact values are not written to run records; only their names
        return cls(
            phase=data["phase"],
            status=PhaseStatus(data["status"]),
            reason=data.get("reason"),
            new_facts={key: "" for key in data.get("new_facts", [])},
            forgotten=data.get("forgotten", []),
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            operation=data.get("operation"),
            succeeded_targets=data.get("succeeded_targets", []),
            failed_targets=data.get("failed_targets", []),
            remediation=data.get("remediation"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            duration_seconds=data.get("duration_seconds", 0.0),
        )


class PhaseContext:
    """
    Everything a phase may touch while it runs.

    The store is read-only here. ``remember()`` and ``forget()`` ask the
    orchestrator to commit a change, which is persisted immediately so a
    later failure in the same phase keeps what was learned.
    """

    def __init__(
        self,
        config,
        store,
        executor: RemoteExecutor,
        cloud=None,
        commit: Optional[Callable[[str, Optional[str]], bool]] = None,
        checker: Optional[PreflightChecker] = None,
        tools: Optional[Toolbox] = None,
    ):
        self.config = config
        self.store = store
        self.executor = executor
        self.cloud = cloud
        self._commit = commit
        self.checker = checker or PreflightChecker(store, cloud)
        self.tools = tools or Toolbox(executor, config)
        self.new_facts: dict[str, str] = {}
        self.forgotten: list[str] = []

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.store.get(key, default)

    def require(self, key: str) -> str:
        """Read a fact that must exist at this point."""
        value = self.store.get(key)
        if not value:
            raise PreflightFailure(CheckResult(CheckStatus.MISSING, key, "not recorded in state file"))
        return value

    def remember(self, key: str, value) -> None:
        if self._commit is None:
            raise RuntimeError("PhaseContext has no commit hook")
        value = "" if value is None else str(value)
        if self._commit(key, value):
            self.new_facts[key] = value
            logger.debug(f"Recorded {key}", extra={"event": "fact_recorded"})

    def remember_all(self, facts: dict[str, Any]) -> None:
        for key, value in facts.items():
            self.remember(key, value)

    def forget(self, *keys: str) -> None:
        for key in keys:
            if self.store.get(key) is not None and self._commit(key, None):
                self.forgotten.append(key)

    # ------------------------------------------------------------------
    # Targets and execution helpers
    # ------------------------------------------------------------------

    @property
    def local(self) -> Target:
        return Target.local()

    @property
    def cloud_target(self) -> Target:
        return Target.cloud(self.config.region)

    @property
    def key_file(self) -> Path:
        return self.config.path(self.get("KEY_FILE") or self.config.key_file)

    def node_target(self, node) -> Target:
        return Target.host(
            node.name,
            self.require(node.key("PUBLIC_IP")),
            self.config.ssh_user,
            self.key_file,
            self.config.ssh_port,
        )

    def node_targets(self, nodes: Optional[Iterable] = None) -> list[Target]:
        nodes = self.config.nodes if nodes is None else nodes
        return [self.node_target(node) for node in nodes]

    def options(self, **overrides) -> RunOptions:
        timeouts = self.config.timeouts
        options = RunOptions(
            timeout=timeouts.command,
            retries=timeouts.retries,
            retry_delay=timeouts.retry_delay,
        )
        return options.but(**overrides)

    def ssh(self, target: Target, command: str, **overrides) -> CommandResult:
        return self.executor.run(target, command, self.options(**overrides))

    def aws(self, fn: Callable[[], Any], description: str) -> Any:
        """Make a cloud call and return its value, raising on failure."""
        result = self.executor.call(self.cloud_target, fn, self.options(), description)
        return result.check(description).value

    def poll(
        self,
        probe: Callable[[], CommandResult],
        predicate: Callable[[CommandResult], bool],
        description: str,
        timeout: float,
        unreachable_timeout: Optional[float] = None,
    ) -> PollResult:
        return self.executor.poll_until(
            probe,
            predicate,
            description,
            interval=self.config.timeouts.poll_interval,
            timeout=timeout,
            unreachable_timeout=unreachable_timeout,
        )

    def check_abort(self, where: str = "") -> None:
        if self.executor.aborted:
            raise AbortRequested(where)


class Phase(ABC):
    """
    Abstract base class for provisioning phases.

    Each phase must implement:
    - check(): read-only idempotency predicate; returns a reason when the
      phase's effect is already in place, None otherwise
    - run(): perform the action, recording facts with ctx.remember()
    """

    name: str = ""
    description: str = ""
    requires: tuple = ()
    produces: tuple = ()
    destructive: bool = False
    # Phases that may create the state file when it does not exist yet
    bootstrap: bool = False

    def requirements(self, ctx: PhaseContext) -> list[Requirement]:
        return []

    @abstractmethod
    def check(self, ctx: PhaseContext) -> Optional[str]:
        pass

    @abstractmethod
    def run(self, ctx: PhaseContext) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class PhaseRunner:
    """Runs a single phase: preflight, idempotency check, action."""

    def execute(self, phase: Phase, ctx: PhaseContext) -> PhaseOutcome:
        outcome = PhaseOutcome(phase=phase.name, started_at=datetime.now(timezone.utc))
        start_time = time.monotonic()

        logger.info(
            f"Starting phase: {phase.name}",
            extra={"phase": phase.name, "event": "phase_started"},
        )

        try:
            ctx.checker.verify(phase.requirements(ctx))

            outcome.status = PhaseStatus.CHECKING
            reason = phase.check(ctx)

            if reason:
                outcome.status = PhaseStatus.SKIPPED
                outcome.reason = reason
                logger.info(
                    f"Phase {phase.name} skipped: {reason}",
                    extra={"phase": phase.name, "event": "phase_skipped"},
                )
            else:
                ctx.check_abort(phase.name)
                outcome.status = PhaseStatus.RUNNING
                phase.run(ctx)
                outcome.status = PhaseStatus.SUCCEEDED
                logger.info(
                    f"Phase {phase.name} completed successfully",
                    extra={
                        "phase": phase.name,
                        "event": "phase_completed",
                        "metadata": {"new_facts": sorted(ctx.new_facts)},
                    },
                )

        except Exception as e:
            self._fail(outcome, phase, e)

        finally:
            outcome.new_facts = dict(ctx.new_facts)
            outcome.forgotten = list(ctx.forgotten)
            outcome.ended_at = datetime.now(timezone.utc)
            outcome.duration_seconds = time.monotonic() - start_time

        return outcome

    @staticmethod
    def _fail(outcome: PhaseOutcome, phase: Phase, error: Exception) -> None:
        outcome.status = PhaseStatus.FAILED
        outcome.error = str(error)
        outcome.error_kind = getattr(error, "kind", "error")
        outcome.operation = getattr(error, "operation", None)

        if isinstance(error, RemoteCommandFailed):
            outcome.failed_targets = error.failed_targets
            outcome.succeeded_targets = error.succeeded_targets
        elif getattr(error, "target", None):
            outcome.failed_targets = [error.target]
        if isinstance(error, Unrecoverable):
            outcome.remediation = error.remediation

        extra = {
            "phase": phase.name,
            "event": "phase_failed",
            "metadata": {
                "kind": outcome.error_kind,
                "failed_targets": outcome.failed_targets,
                "succeeded_targets": outcome.succeeded_targets,
            },
        }
        if isinstance(error, KubestageError):
            logger.error(f"Phase {phase.name} failed: {error}", extra=extra)
        else:
            logger.error(f"Phase {phase.name} failed with exception: {error}", extra=extra, exc_info=True)
