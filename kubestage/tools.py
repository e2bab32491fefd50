"""
Local CLI wrappers (terraform, kubectl, helm, git, gh).

All calls go through the RemoteExecutor's local target so they get the same
timeouts, retry policy and result classification as SSH commands.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from kubestage.errors import RemoteCommandFailed
from kubestage.remote import CommandResult, RemoteExecutor, RunOptions, Target

logger = logging.getLogger(__name__)


class Toolbox:
    """
    Runs local CLIs for phases.

    Args:
        executor: RemoteExecutor used for every invocation
        config: KubestageConfig (paths and timeouts)
        kubeconfig: Kubeconfig for kubectl/helm; defaults to config.kubeconfig_path
    """

    def __init__(self, executor: RemoteExecutor, config, kubeconfig: Optional[Path] = None):
        self.executor = executor
        self.config = config
        self.target = Target.local()
        self.kubeconfig = Path(kubeconfig or config.kubeconfig_path).expanduser()
        self.terraform_dir = config.path(config.terraform_dir)

    def _options(self, **overrides) -> RunOptions:
        timeouts = self.config.timeouts
        options = RunOptions(timeout=timeouts.command, retries=0, retry_delay=timeouts.retry_delay)
        return options.but(**overrides)

    def run(self, *args, **overrides) -> CommandResult:
        return self.executor.run(self.target, [str(a) for a in args], self._options(**overrides))

    # ------------------------------------------------------------------
    # terraform
    # ------------------------------------------------------------------

    def terraform(self, *args, **overrides) -> CommandResult:
        overrides.setdefault("cwd", self.terraform_dir)
        overrides.setdefault("env", {"TF_IN_AUTOMATION": "1"})
        return self.run("terraform", *args, **overrides)

    def terraform_output(self) -> dict[str, Any]:
        """Return ``terraform output -json`` as {name: value}."""
        result = self.terraform("output", "-json").check("terraform output")
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise RemoteCommandFailed("terraform output", {"local": f"invalid JSON: {e}"})
        return {name: entry.get("value") for name, entry in raw.items()}

    # ------------------------------------------------------------------
    # kubectl / helm
    # ------------------------------------------------------------------

    def _kube_env(self) -> dict[str, str]:
        return {"KUBECONFIG": str(self.kubeconfig)}

    def kubectl(self, *args, **overrides) -> CommandResult:
        overrides.setdefault("env", self._kube_env())
        overrides.setdefault("retries", self.config.timeouts.retries)
        overrides.setdefault("timeout", 120)
        return self.run("kubectl", *args, **overrides)

    def kubectl_json(self, *args) -> Optional[dict]:
        """Run ``kubectl ... -o json``. Returns None when the command fails."""
        result = self.kubectl(*args, "-o", "json")
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning(f"kubectl {' '.join(args)} returned invalid JSON")
            return None

    def kubectl_apply(self, manifest: str, operation: str = "kubectl apply") -> CommandResult:
        return self.kubectl("apply", "-f", "-", stdin=manifest).check(operation)

    def helm(self, *args, **overrides) -> CommandResult:
        overrides.setdefault("env", self._kube_env())
        overrides.setdefault("timeout", self.config.timeouts.helm)
        return self.run("helm", *args, **overrides)

    def helm_releases(self, namespace: Optional[str] = None) -> Optional[list[dict]]:
        """Installed releases as dicts (name, namespace, status, ...), None on error."""
        scope = ["-n", namespace] if namespace else ["-A"]
        result = self.helm("list", *scope, "-o", "json", timeout=60)
        if not result.ok:
            return None
        return json.loads(result.stdout or "[]")

    def cluster_reachable(self) -> bool:
        if not self.kubeconfig.exists():
            return False
        return self.kubectl("cluster-info", "--request-timeout=10s", retries=0, timeout=30).ok

    # ------------------------------------------------------------------
    # git / gh
    # ------------------------------------------------------------------

    def git(self, *args, cwd: Path, **overrides) -> CommandResult:
        return self.run("git", *args, cwd=cwd, **overrides)

    def gh(self, *args, **overrides) -> CommandResult:
        return self.run("gh", *args, **overrides)
