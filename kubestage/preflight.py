"""
Preflight checks evaluated before a phase acts.

A phase declares its requirements (tools on PATH, AWS credentials, facts
produced by earlier phases, local files). The checker evaluates them without
changing anything and without retrying; the first unmet requirement stops the
phase with a PreflightFailure before any remote call is made.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from kubestage.errors import PreflightFailure

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    SATISFIED = "satisfied"
    MISSING = "missing"
    MISCONFIGURED = "misconfigured"


@dataclass
class CheckResult:
    status: CheckStatus
    name: str
    detail: str = ""
    hint: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CheckStatus.SATISFIED


class Requirement(ABC):
    """Something a phase needs before it can act."""

    name: str = "requirement"

    @abstractmethod
    def evaluate(self, checker: "PreflightChecker") -> CheckResult:
        pass


TOOL_HINTS = {
    "aws": "Install the AWS CLI: https://docs.aws.amazon.com/cli/latest/userguide/getting-started-install.html",
    "terraform": "Install Terraform: https://developer.hashicorp.com/terraform/install",
    "kubectl": "Install kubectl: https://kubernetes.io/docs/tasks/tools/",
    "helm": "Install Helm: https://helm.sh/docs/intro/install/",
    "git": "Install git from your package manager",
    "gh": "Install the GitHub CLI (https://cli.github.com) and run 'gh auth login'",
}


class Tool(Requirement):
    """An executable that must be on PATH."""

    def __init__(self, name: str, hint: Optional[str] = None):
        self.name = name
        self.hint = hint or TOOL_HINTS.get(name)

    def evaluate(self, checker):
        path = checker.which(self.name)
        if path is None:
            return CheckResult(CheckStatus.MISSING, self.name, "not found on PATH", self.hint)
        return CheckResult(CheckStatus.SATISFIED, self.name, path)


class AwsCredentials(Requirement):
    """Working AWS credentials (STS GetCallerIdentity succeeds)."""

    name = "aws-credentials"
    hint = "Run 'aws configure' or set AWS_PROFILE"

    def evaluate(self, checker):
        if checker.cloud is None:
            return CheckResult(CheckStatus.MISCONFIGURED, self.name, "no AWS client configured", self.hint)
        try:
            identity = checker.cloud.identity()
        except NoCredentialsError:
            return CheckResult(CheckStatus.MISSING, self.name, "no credentials found", self.hint)
        except (ClientError, BotoCoreError) as e:
            return CheckResult(CheckStatus.MISCONFIGURED, self.name, str(e), self.hint)
        return CheckResult(CheckStatus.SATISFIED, self.name, identity.get("Arn", "ok"))


class Facts(Requirement):
    """Keys that earlier phases must have written to the store."""

    def __init__(self, *keys: str, produced_by: Optional[str] = None):
        self.keys = keys
        self.produced_by = produced_by
        self.name = ", ".join(keys)

    def evaluate(self, checker):
        for key in self.keys:
            if not checker.store.get(key):
                hint = f"Run 'kubestage {self.produced_by}' first" if self.produced_by else None
                return CheckResult(CheckStatus.MISSING, key, "not recorded in state file", hint)
        return CheckResult(CheckStatus.SATISFIED, self.name)


class LocalFile(Requirement):
    def __init__(self, path: Path, hint: Optional[str] = None):
        self.path = Path(path)
        self.hint = hint
        self.name = str(path)

    def evaluate(self, checker):
        if not self.path.exists():
            return CheckResult(CheckStatus.MISSING, self.name, "file not found", self.hint)
        if not self.path.is_file():
            return CheckResult(CheckStatus.MISCONFIGURED, self.name, "not a regular file", self.hint)
        return CheckResult(CheckStatus.SATISFIED, self.name)


class LocalDirectory(Requirement):
    def __init__(self, path: Path, hint: Optional[str] = None):
        self.path = Path(path)
        self.hint = hint
        self.name = str(path)

    def evaluate(self, checker):
        if not self.path.exists():
            return CheckResult(CheckStatus.MISSING, self.name, "directory not found", self.hint)
        if not self.path.is_dir():
            return CheckResult(CheckStatus.MISCONFIGURED, self.name, "not a directory", self.hint)
        return CheckResult(CheckStatus.SATISFIED, self.name)


class Setting(Requirement):
    """A configuration value that must be set."""

    def __init__(self, name: str, value, hint: Optional[str] = None):
        self.name = name
        self.value = value
        self.hint = hint

    def evaluate(self, checker):
        if not self.value:
            return CheckResult(CheckStatus.MISCONFIGURED, self.name, "not set in config.yaml", self.hint)
        return CheckResult(CheckStatus.SATISFIED, self.name, str(self.value))


class PreflightChecker:
    """
    Evaluates phase requirements.

    Args:
        store: Read-only view of the variable store (for Facts)
        cloud: CloudClient used for credential checks
        which: PATH lookup, injectable for tests
    """

    def __init__(self, store, cloud=None, which: Callable[[str], Optional[str]] = shutil.which):
        self.store = store
        self.cloud = cloud
        self.which = which

    def check(self, requirement: Requirement) -> CheckResult:
        result = requirement.evaluate(self)
        logger.debug(f"preflight {result.name}: {result.status.value} {result.detail}")
        return result

    def evaluate(self, requirements: Iterable[Requirement]) -> list[CheckResult]:
        """Evaluate every requirement and return all results."""
        return [self.check(requirement) for requirement in requirements]

    def verify(self, requirements: Iterable[Requirement]) -> None:
        """
        Check requirements in order.

        Raises:
            PreflightFailure: At the first requirement that is not satisfied
        """
        for requirement in requirements:
            result = self.check(requirement)
            if not result.ok:
                raise PreflightFailure(result)
