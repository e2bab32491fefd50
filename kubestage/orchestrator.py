"""
Orchestrator - runs an ordered list of phases against one VariableStore.

The orchestrator is the store's only writer. Phases ask it to commit facts
through their context; each commit is persisted at once, and the store is
persisted again after every phase before the next one starts.
"""

import json
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from kubestage.errors import AbortRequested, PipelineDefinitionError
from kubestage.phases.base import Phase, PhaseContext, PhaseOutcome, PhaseRunner, PhaseStatus
from kubestage.preflight import PreflightChecker
from kubestage.remote import RemoteExecutor
from kubestage.store import VariableStore
from kubestage.tools import Toolbox
from kubestage.utils import (
    format_duration,
    masked,
    print_error,
    print_info,
    print_skipped,
    print_success,
    print_warning,
)

logger = logging.getLogger(__name__)

USER_ERROR_KINDS = ("user", "preflight")


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PipelineRun:
    """Record of one orchestrator invocation."""

    name: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    status: RunStatus = RunStatus.RUNNING
    outcomes: list[PhaseOutcome] = field(default_factory=list)
    resume_point: Optional[str] = None
    snapshot: dict[str, str] = field(default_factory=dict)

    @property
    def failed_outcome(self) -> Optional[PhaseOutcome]:
        for outcome in self.outcomes:
            if outcome.status == PhaseStatus.FAILED:
                return outcome
        return None

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return 0
        if self.status == RunStatus.CANCELLED:
            return 3
        failed = self.failed_outcome
        if failed is not None and failed.error_kind in USER_ERROR_KINDS:
            return 2
        return 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "status": self.status.value,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "resume_point": self.resume_point,
            "snapshot": self.snapshot,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineRun":
        return cls(
            name=data["name"],
            run_id=data["run_id"],
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            duration_seconds=data.get("duration_seconds", 0.0),
            status=RunStatus(data["status"]),
            outcomes=[PhaseOutcome.from_dict(o) for o in data.get("outcomes", [])],
            resume_point=data.get("resume_point"),
            snapshot=data.get("snapshot", {}),
        )


def order_phases(phases: Sequence[Phase]) -> list[Phase]:
    """
    Check that every phase comes after the phases it requires.

    Dependencies that are not part of the list are assumed to have run
    earlier; their facts are checked by preflight. The declared order is
    kept, so a valid list comes back unchanged.

    Raises:
        PipelineDefinitionError: Duplicate phases, a dependency listed after
            its dependent, or a cycle
    """
    position = {}
    for i, phase in enumerate(phases):
        if phase.name in position:
            raise PipelineDefinitionError(f"Phase {phase.name} is listed twice")
        position[phase.name] = i

    for i, phase in enumerate(phases):
        for dependency in phase.requires:
            if dependency == phase.name:
                raise PipelineDefinitionError(f"Phase {phase.name} requires itself")
            if position.get(dependency, -1) > i:
                raise PipelineDefinitionError(
                    f"Phase {phase.name} requires {dependency}, which is listed after it"
                )
    return list(phases)


def resume_point(last_run: Optional[PipelineRun]) -> Optional[str]:
    """Phase a failed or cancelled run stopped at, None if it completed."""
    if last_run is None or last_run.status == RunStatus.SUCCEEDED:
        return None
    return last_run.resume_point


def save_run(run: PipelineRun, runs_dir: Path) -> Path:
    runs_dir.mkdir(parents=True, exist_ok=True)
    path = runs_dir / f"{run.run_id}.json"
    with open(path, "w") as f:
        json.dump(run.to_dict(), f, indent=2)
    shutil.copyfile(path, runs_dir / "latest.json")
    shutil.copyfile(path, runs_dir / f"latest-{run.name}.json")
    logger.debug(
        f"Saved run record to {path}",
        extra={"event": "run_saved", "metadata": {"file": str(path)}},
    )
    return path


def load_latest(runs_dir: Path, name: Optional[str] = None) -> Optional[PipelineRun]:
    """
    Load the most recent run record.

    Args:
        runs_dir: Directory holding the run records
        name: Only consider runs with this name (e.g. "up"); any run if None

    Returns:
        PipelineRun from the last run, or None if there is none or it cannot be read
    """
    path = runs_dir / (f"latest-{name}.json" if name else "latest.json")
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return PipelineRun.from_dict(json.load(f))
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"Could not load run record {path}: {e}")
        return None


class Orchestrator:
    """
    Runs phases in order, persisting facts as they are learned.

    Args:
        config: KubestageConfig
        executor: RemoteExecutor shared by every phase
        cloud: CloudClient for AWS calls (optional for phases that never call AWS)
        runner: PhaseRunner, injectable for tests
        which: PATH lookup used by preflight tool checks
    """

    def __init__(
        self,
        config,
        executor: RemoteExecutor,
        cloud=None,
        runner: Optional[PhaseRunner] = None,
        which: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.config = config
        self.executor = executor
        self.cloud = cloud
        self.runner = runner or PhaseRunner()
        self.which = which or shutil.which
        self.store: Optional[VariableStore] = None

    def _commit(self, key: str, value: Optional[str]) -> bool:
        if value is None:
            changed = self.store.delete(key)
        else:
            changed = self.store.set(key, value)
        if changed:
            self.store.persist()
        return changed

    def context(self) -> PhaseContext:
        view = self.store.view()
        return PhaseContext(
            self.config,
            view,
            self.executor,
            cloud=self.cloud,
            commit=self._commit,
            checker=PreflightChecker(view, self.cloud, self.which),
            tools=Toolbox(self.executor, self.config),
        )

    def open_store(self, first: Phase) -> VariableStore:
        """
        Raises:
            NotBootstrapped: No state file and ``first`` cannot create one
            StoreCorrupted: The state file cannot be parsed
        """
        self.store = VariableStore.open(self.config.state_path, create=first.bootstrap)
        return self.store

    def run(
        self,
        phases: Sequence[Phase],
        resume_from: Optional[str] = None,
        name: str = "up",
    ) -> PipelineRun:
        """
        Run ``phases`` in order, halting at the first failure.

        Args:
            phases: Phases to run
            resume_from: Skip phases listed before this one
            name: Label for the run record

        Raises:
            PipelineDefinitionError: Invalid phase order or unknown resume phase
            NotBootstrapped: State file missing and the first phase cannot create it
            StoreCorrupted: State file cannot be parsed
        """
        phases = order_phases(phases)
        if resume_from is not None:
            names = [phase.name for phase in phases]
            if resume_from not in names:
                raise PipelineDefinitionError(
                    f"Cannot resume from {resume_from}: not one of {', '.join(names)}"
                )
            phases = phases[names.index(resume_from):]
        if not phases:
            raise PipelineDefinitionError("No phases to run")

        self.open_store(phases[0])
        run = PipelineRun(name=name)
        start_time = time.monotonic()

        logger.info(
            f"Starting run {run.run_id}: {name}",
            extra={
                "event": "run_started",
                "metadata": {"phases": [p.name for p in phases], "resume_from": resume_from},
            },
        )

        for phase in phases:
            if self.executor.aborted:
                run.status = RunStatus.CANCELLED
                run.resume_point = phase.name
                print_warning(f"Aborted before {phase.name}")
                break

            outcome = self.runner.execute(phase, self.context())
            if self.store.dirty:
                self.store.persist()
            run.outcomes.append(outcome)
            self._report(outcome)

            if outcome.status == PhaseStatus.FAILED:
                cancelled = outcome.error_kind == AbortRequested.kind
                run.status = RunStatus.CANCELLED if cancelled else RunStatus.FAILED
                run.resume_point = phase.name
                break
        else:
            run.status = RunStatus.SUCCEEDED

        run.ended_at = datetime.now(timezone.utc)
        run.duration_seconds = time.monotonic() - start_time
        run.snapshot = masked(self.store.snapshot())

        logger.info(
            f"Run {run.run_id} {run.status.value}",
            extra={
                "event": "run_completed",
                "metadata": {
                    "status": run.status.value,
                    "resume_point": run.resume_point,
                    "duration_seconds": run.duration_seconds,
                },
            },
        )
        save_run(run, self.config.runs_path)
        return run

    @staticmethod
    def _report(outcome: PhaseOutcome) -> None:
        duration = format_duration(outcome.duration_seconds)
        if outcome.status == PhaseStatus.SKIPPED:
            print_skipped(f"{outcome.phase}: {outcome.reason}")
        elif outcome.status == PhaseStatus.SUCCEEDED:
            learned = f", recorded {', '.join(sorted(outcome.new_facts))}" if outcome.new_facts else ""
            print_success(f"{outcome.phase}: done in {duration}{learned}")
        else:
            print_error(f"{outcome.phase} failed: {outcome.error}")
            if outcome.succeeded_targets:
                print_info(f"  succeeded on: {', '.join(outcome.succeeded_targets)}")
            if outcome.failed_targets:
                print_info(f"  failed on: {', '.join(outcome.failed_targets)}")
            if outcome.remediation:
                print_warning(f"  to finish manually run: {outcome.remediation}")
