"""
Configuration management for kubestage.

Loads and validates config.yaml from the kubestage home directory
($KUBESTAGE_HOME, default ~/.config/kubestage) or an explicit path.
"""

import os
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union, get_args, get_origin

import yaml
from dotenv import load_dotenv

from kubestage.errors import ConfigError


DEFAULT_ECR_PROVIDER_URL = (
    "https://artifacts.k8s.io/binaries/cloud-provider-aws/v1.29.0/"
    "linux/amd64/ecr-credential-provider-linux-amd64"
)
DEFAULT_ARGOCD_MANIFEST_URL = (
    "https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml"
)


SCALAR_TYPES = (str, int, float, bool)


def _scalar_type(annotation) -> Optional[tuple]:
    """Accepted Python types for a scalar field, or None for anything else."""
    if get_origin(annotation) is Union:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) != 1:
            return None
        annotation = args[0]
    if annotation not in SCALAR_TYPES:
        return None
    if annotation is float:
        return (int, float)
    return (annotation,)


def check_types(cls, data: dict[str, Any], section: Optional[str] = None) -> None:
    """
    Reject values whose YAML type does not match the dataclass field.

    Ints are accepted for float fields; bools are never accepted as numbers.
    None is accepted for Optional fields.

    Raises:
        ConfigError: Naming the offending key
    """
    for f in fields(cls):
        if f.name not in data:
            continue
        accepted = _scalar_type(f.type)
        if accepted is None:
            continue
        value = data[f.name]
        if value is None and get_origin(f.type) is Union:
            continue
        if isinstance(value, bool) and bool not in accepted:
            ok = False
        else:
            ok = isinstance(value, accepted)
        if not ok:
            name = f"{section}.{f.name}" if section else f.name
            raise ConfigError(
                f"{name} must be {accepted[-1].__name__}, got {type(value).__name__} {value!r}"
            )


def _mapping(value, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def get_kubestage_home() -> Path:
    """Return the kubestage home directory."""
    env_home = os.environ.get("KUBESTAGE_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/kubestage").expanduser()


@dataclass(frozen=True)
class NodeSpec:
    """A cluster node and the store key prefix its facts live under."""

    name: str
    prefix: str
    role: str = "worker"

    @property
    def is_control_plane(self) -> bool:
        return self.role == "control-plane"

    def key(self, suffix: str) -> str:
        """Store key for this node, e.g. ``key("PUBLIC_IP") -> MASTER_PUBLIC_IP``."""
        return f"{self.prefix}_{suffix}"


DEFAULT_NODES = (
    NodeSpec("master", "MASTER", "control-plane"),
    NodeSpec("worker1", "WORKER1"),
    NodeSpec("worker2", "WORKER2"),
)


@dataclass
class Timeouts:
    """Timeouts (seconds) and retry budgets for remote operations."""

    command: float = 600
    helm: float = 660
    poll_interval: float = 10
    node_ready: float = 300
    pods_ready: float = 300
    argocd_ready: float = 300
    instance_running: float = 300
    table_active: float = 120
    unreachable: float = 120
    ssh_connect: float = 10
    retries: int = 3
    retry_delay: float = 5


@dataclass
class LoggingConfig:
    dir: str = "~/.config/kubestage/logs"
    level: str = "INFO"
    format: str = "structured"
    console: bool = True


@dataclass
class KubestageConfig:
    """Complete kubestage configuration."""

    # Project
    project_name: str = "retail-store"
    project_dir: str = "."
    region: str = "us-east-1"

    # State
    state_file: str = "deployment-info.txt"
    runs_dir: str = ".kubestage/runs"

    # Access
    key_file: str = "k8s-kubeadm-key"
    ssh_user: str = "ubuntu"
    ssh_port: int = 22

    # Layout
    terraform_dir: str = "terraform"
    helm_chart_dir: str = "helm-chart"
    kubeconfig_path: str = "~/.kube/config-retail-store"
    gitops_dir: Optional[str] = None

    # Terraform remote state backend
    state_bucket: str = "retail-store-terraform-state"
    lock_table: str = "terraform-state-lock"

    # Cluster
    kubernetes_version: str = "1.28"
    calico_version: str = "v3.26.1"
    pod_network_cidr: str = "192.168.0.0/16"
    ecr_provider_url: str = DEFAULT_ECR_PROVIDER_URL
    ecr_provider_min_size: int = 10_000_000
    nodes: tuple = DEFAULT_NODES

    # Application
    namespace: str = "retail-store"
    ingress_namespace: str = "ingress-nginx"
    ingress_http_nodeport: int = 30080
    ingress_https_nodeport: int = 30443
    cart_table: str = "retail-store-cart"
    services: tuple = ("ui", "catalog", "cart", "orders", "checkout")

    # GitOps
    gitops_repo_name: str = "gitops-retail-store-app"
    gitops_branch: str = "main"
    github_user: Optional[str] = None
    argocd_namespace: str = "argocd"
    argocd_nodeport: int = 30090
    argocd_manifest_url: str = DEFAULT_ARGOCD_MANIFEST_URL

    timeouts: Timeouts = field(default_factory=Timeouts)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    env_file: Optional[str] = None
    config_path: Optional[Path] = None

    # ------------------------------------------------------------------

    def path(self, value: Optional[str]) -> Optional[Path]:
        """Resolve a configured path relative to project_dir."""
        if value is None:
            return None
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return (Path(self.project_dir).expanduser() / path).resolve()

    @property
    def state_path(self) -> Path:
        return self.path(self.state_file)

    @property
    def runs_path(self) -> Path:
        return self.path(self.runs_dir)

    @property
    def gitops_path(self) -> Path:
        return self.path(self.gitops_dir or self.gitops_repo_name)

    @property
    def control_plane(self) -> NodeSpec:
        for node in self.nodes:
            if node.is_control_plane:
                return node
        raise ConfigError("No node with role 'control-plane' configured")

    @property
    def workers(self) -> list[NodeSpec]:
        return [node for node in self.nodes if not node.is_control_plane]

    def get_log_file_path(self) -> Path:
        log_dir = Path(self.logging.dir).expanduser()
        return log_dir / f"kubestage-{datetime.now().strftime('%Y-%m-%d')}.log"

    def validate(self) -> None:
        """Validate cross-field constraints."""
        if not self.project_name:
            raise ConfigError("project_name is required")
        if not self.nodes:
            raise ConfigError("At least one node is required")
        prefixes = [node.prefix for node in self.nodes]
        if len(set(prefixes)) != len(prefixes):
            raise ConfigError(f"Duplicate node prefixes: {prefixes}")
        control_planes = [node for node in self.nodes if node.is_control_plane]
        if len(control_planes) != 1:
            raise ConfigError(
                f"Exactly one control-plane node is required, got {len(control_planes)}"
            )
        if self.logging.format not in ("structured", "pretty"):
            raise ConfigError(f"logging.format must be 'structured' or 'pretty', got {self.logging.format!r}")
        if self.timeouts.poll_interval <= 0:
            raise ConfigError("timeouts.poll_interval must be positive")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("config_path")
        data["nodes"] = [asdict(node) for node in self.nodes]
        data["services"] = list(self.services)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KubestageConfig":
        """Build a config from parsed YAML, rejecting unknown keys."""
        data = dict(data)
        known = {f.name for f in fields(cls)} - {"config_path"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        check_types(cls, data)
        try:
            if "timeouts" in data:
                timeouts = _mapping(data["timeouts"], "timeouts")
                check_types(Timeouts, timeouts, "timeouts")
                data["timeouts"] = Timeouts(**timeouts)
            if "logging" in data:
                logging_section = _mapping(data["logging"], "logging")
                check_types(LoggingConfig, logging_section, "logging")
                data["logging"] = LoggingConfig(**logging_section)
            if "nodes" in data:
                if not isinstance(data["nodes"], list):
                    raise ConfigError("nodes must be a list of mappings")
                nodes = []
                for i, node in enumerate(data["nodes"]):
                    node = _mapping(node, f"nodes[{i}]")
                    check_types(NodeSpec, node, f"nodes[{i}]")
                    nodes.append(NodeSpec(**node))
                data["nodes"] = tuple(nodes)
            if "services" in data:
                services = data["services"]
                if not isinstance(services, list) or not all(isinstance(s, str) for s in services):
                    raise ConfigError("services must be a list of names")
                data["services"] = tuple(services)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration section: {e}")

        config = cls(**data)
        config.validate()
        return config


def load_config(config_path: Optional[Path] = None) -> KubestageConfig:
    """
    Load kubestage configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $KUBESTAGE_HOME/config.yaml

    Returns:
        KubestageConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_kubestage_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"kubestage config.yaml not found at {config_path}. "
            "Run 'kubestage configure' to create one."
        )

    try:
        raw = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = KubestageConfig.from_dict(raw)
    config.config_path = config_path

    # project_dir is relative to the config file, not the caller's cwd
    project_dir = Path(config.project_dir).expanduser()
    if not project_dir.is_absolute():
        config.project_dir = str((config_path.parent / project_dir).resolve())

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    return config


def default_config_dict(project_dir: Optional[Path] = None) -> dict[str, Any]:
    """Defaults written by `kubestage configure`."""
    data = KubestageConfig().to_dict()
    if project_dir is not None:
        data["project_dir"] = str(project_dir)
    data["env_file"] = str(get_kubestage_home() / ".env")
    return data
