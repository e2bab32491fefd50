import shlex
from dataclasses import dataclass
from typing import Optional
from unittest.mock import MagicMock

import pytest

from kubestage.config import KubestageConfig, LoggingConfig
from kubestage.phases.base import PhaseContext
from kubestage.preflight import PreflightChecker
from kubestage.remote import CommandResult, RemoteExecutor, ResultKind, RunOptions, Transport
from kubestage.store import VariableStore
from kubestage.tools import Toolbox


@dataclass
class Call:
    target: str
    command: str
    options: RunOptions


class FakeTransport(Transport):
    """
    Scripted transport. ``on(pattern, ...)`` registers a response for any
    command containing ``pattern``; rules are tried in registration order
    and a rule with ``times`` stops matching once used up. Unmatched
    commands succeed with empty output.
    """

    def __init__(self):
        self.calls: list[Call] = []
        self._rules = []
        self.closed = False

    def on(
        self,
        pattern: str,
        stdout: str = "",
        exit_code: int = 0,
        stderr: str = "",
        kind: Optional[ResultKind] = None,
        times: Optional[int] = None,
        target: Optional[str] = None,
    ) -> "FakeTransport":
        if kind is None:
            kind = ResultKind.OK if exit_code == 0 else ResultKind.NON_ZERO_EXIT
        self._rules.append({
            "pattern": pattern,
            "target": target,
            "kind": kind,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
            "times": times,
        })
        return self

    def execute(self, target, command, options):
        display = command if isinstance(command, str) else shlex.join(str(c) for c in command)
        self.calls.append(Call(target.name, display, options))
        for rule in self._rules:
            if rule["pattern"] not in display:
                continue
            if rule["target"] is not None and rule["target"] != target.name:
                continue
            if rule["times"] is not None:
                if rule["times"] <= 0:
                    continue
                rule["times"] -= 1
            exit_code = rule["exit_code"] if rule["kind"] != ResultKind.OK else 0
            return CommandResult(
                rule["kind"], target.name, display, rule["stdout"], rule["stderr"], exit_code
            )
        return CommandResult(ResultKind.OK, target.name, display, exit_code=0)

    def commands(self, target: Optional[str] = None) -> list[str]:
        return [c.command for c in self.calls if target is None or c.target == target]

    def ran(self, pattern: str) -> bool:
        return any(pattern in command for command in self.commands())

    def close(self):
        self.closed = True


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def config(tmp_path):
    return KubestageConfig(
        project_dir=str(tmp_path),
        kubeconfig_path=str(tmp_path / "kubeconfig"),
        github_user="octocat",
        logging=LoggingConfig(dir=str(tmp_path / "logs"), console=False),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ssh_transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(transport, ssh_transport, clock):
    return RemoteExecutor(local=transport, ssh=ssh_transport, clock=clock, sleep=clock.sleep)


@pytest.fixture
def cloud():
    return MagicMock()


@pytest.fixture
def store(config):
    return VariableStore.open(config.state_path, create=True)


@pytest.fixture
def which():
    return lambda name: f"/usr/bin/{name}"


@pytest.fixture
def make_context(config, store, executor, cloud, which):
    """Build a PhaseContext whose commits go straight to ``store``."""

    def commit(key, value):
        changed = store.delete(key) if value is None else store.set(key, value)
        if changed:
            store.persist()
        return changed

    def factory(**overrides):
        view = store.view()
        kwargs = {
            "cloud": cloud,
            "commit": commit,
            "checker": PreflightChecker(view, cloud, which),
            "tools": Toolbox(executor, config),
        }
        kwargs.update(overrides)
        return PhaseContext(config, view, executor, **kwargs)

    return factory


@pytest.fixture
def cluster_facts(store):
    """Facts recorded by init and apply for a three-node cluster."""
    facts = {
        "REGION": "us-east-1",
        "PROJECT_NAME": "retail-store",
        "TF_STATE_BUCKET": "retail-store-terraform-state",
        "TF_LOCK_TABLE": "terraform-state-lock",
        "MASTER_INSTANCE_ID": "i-master",
        "MASTER_PUBLIC_IP": "3.91.10.20",
        "MASTER_PRIVATE_IP": "10.0.1.10",
        "WORKER1_INSTANCE_ID": "i-worker1",
        "WORKER1_PUBLIC_IP": "3.91.10.21",
        "WORKER1_PRIVATE_IP": "10.0.1.11",
        "WORKER2_INSTANCE_ID": "i-worker2",
        "WORKER2_PUBLIC_IP": "3.91.10.22",
        "WORKER2_PRIVATE_IP": "10.0.1.12",
        "ECR_REGISTRY": "123456789012.dkr.ecr.us-east-1.amazonaws.com",
    }
    for key, value in facts.items():
        store.set(key, value)
    store.persist()
    return facts
