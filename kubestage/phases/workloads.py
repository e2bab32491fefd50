"""
deploy - the retail-store application and its backing services via Helm.

Releases: postgresql and redis (bitnami), the application chart, and the
ingress-nginx controller exposed on a NodePort. RabbitMQ is a plain
Deployment/Service applied with kubectl.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from kubestage.errors import PollTimeout
from kubestage.phases.base import Phase
from kubestage.phases.gitops import application_names
from kubestage.preflight import Facts, LocalDirectory, Tool
from kubestage.remote import PollStatus

logger = logging.getLogger(__name__)

HELM_REPOS = {
    "bitnami": "https://charts.bitnami.com/bitnami",
    "ingress-nginx": "https://kubernetes.github.io/ingress-nginx",
}

RABBITMQ_IMAGE = "rabbitmq:3.13-management"


@dataclass(frozen=True)
class Release:
    name: str
    chart: str
    namespace: str
    values: tuple = ()
    timeout: str = "10m"

    def install_args(self) -> list[str]:
        args = [
            "upgrade", "--install", self.name, self.chart,
            "--namespace", self.namespace, "--create-namespace",
            "--wait", f"--timeout={self.timeout}",
        ]
        for key, value in self.values:
            args += ["--set", f"{key}={_normalise(value)}"]
        return args


def _normalise(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_values(values: Optional[dict], prefix: str = "") -> dict[str, str]:
    """``{"auth": {"enabled": False}}`` -> ``{"auth.enabled": "false"}``."""
    flat = {}
    for key, value in (values or {}).items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            flat.update(flatten_values(value, path))
        else:
            flat[path] = _normalise(value)
    return flat


def releases(ctx) -> list[Release]:
    config = ctx.config
    ns = config.namespace
    return [
        Release("postgresql", "bitnami/postgresql", ns, (
            ("auth.postgresPassword", "postgres"),
            ("auth.database", "catalog"),
            ("primary.persistence.enabled", False),
            ("volumePermissions.enabled", True),
        )),
        Release("redis", "bitnami/redis", ns, (
            ("auth.enabled", False),
            ("master.persistence.enabled", False),
            ("replica.replicaCount", 0),
            ("replica.persistence.enabled", False),
        )),
        Release(config.project_name, str(config.path(config.helm_chart_dir)), ns, (
            ("global.ecr.registry", ctx.require("ECR_REGISTRY")),
            ("global.dynamodb.tableName", ctx.require("DYNAMODB_TABLE_NAME")),
            ("global.dynamodb.region", ctx.get("DYNAMODB_REGION") or config.region),
        )),
        Release("nginx-ingress", "ingress-nginx/ingress-nginx", config.ingress_namespace, (
            ("controller.service.type", "NodePort"),
            ("controller.service.nodePorts.http", config.ingress_http_nodeport),
            ("controller.service.nodePorts.https", config.ingress_https_nodeport),
        ), timeout="5m"),
    ]


def namespace_manifest(name: str, release: str) -> str:
    """Namespace carrying Helm ownership metadata so charts can adopt it."""
    return yaml.safe_dump({
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": {"app.kubernetes.io/managed-by": "Helm"},
            "annotations": {
                "meta.helm.sh/release-name": release,
                "meta.helm.sh/release-namespace": name,
            },
        },
    })


def rabbitmq_manifest(namespace: str) -> str:
    labels = {"app": "rabbitmq"}
    ports = [("amqp", 5672), ("management", 15672)]
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "rabbitmq", "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": "rabbitmq",
                        "image": RABBITMQ_IMAGE,
                        "ports": [{"containerPort": port, "name": name} for name, port in ports],
                        "env": [
                            {"name": "RABBITMQ_DEFAULT_USER", "value": "guest"},
                            {"name": "RABBITMQ_DEFAULT_PASS", "value": "guest"},
                        ],
                        "resources": {
                            "requests": {"memory": "256Mi", "cpu": "100m"},
                            "limits": {"memory": "512Mi", "cpu": "500m"},
                        },
                    }],
                },
            },
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "rabbitmq", "namespace": namespace},
        "spec": {
            "selector": labels,
            "ports": [{"name": name, "port": port, "targetPort": port} for name, port in ports],
        },
    }
    return yaml.safe_dump_all([deployment, service])


def pending_pods(pods_json) -> list[str]:
    """Pods that are neither Ready nor completed."""
    pending = []
    for pod in (pods_json or {}).get("items", []):
        status = pod.get("status", {})
        if status.get("phase") == "Succeeded":
            continue
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in status.get("conditions", [])
        )
        if not ready:
            pending.append(pod["metadata"]["name"])
    return pending


class DeployPhase(Phase):
    name = "deploy"
    description = "Install PostgreSQL, Redis, RabbitMQ, the application chart and ingress-nginx"
    requires = ("cluster-init", "dynamodb")
    produces = ("APP_NAMESPACE", "APP_URL")

    def requirements(self, ctx):
        return [
            Facts("K8S_API_ENDPOINT", "KUBECONFIG_PATH", produced_by="cluster-init"),
            Facts("ECR_REGISTRY", produced_by="apply"),
            Facts("DYNAMODB_TABLE_NAME", produced_by="dynamodb"),
            Tool("helm"),
            Tool("kubectl"),
            LocalDirectory(ctx.config.path(ctx.config.helm_chart_dir), hint="Set helm_chart_dir in config.yaml"),
        ]

    def _app_url(self, ctx) -> str:
        master_ip = ctx.require(ctx.config.control_plane.key("PUBLIC_IP"))
        return f"http://{master_ip}:{ctx.config.ingress_http_nodeport}"

    def _release_current(self, ctx, release: Release) -> bool:
        installed = ctx.tools.helm_releases(release.namespace) or []
        status = next((r.get("status") for r in installed if r.get("name") == release.name), None)
        if status != "deployed":
            return False
        result = ctx.tools.helm("get", "values", release.name, "-n", release.namespace, "-o", "json", timeout=60)
        if not result.ok:
            return False
        current = flatten_values(json.loads(result.stdout or "{}"))
        return all(current.get(key) == _normalise(value) for key, value in release.values)

    def _handed_over(self, ctx) -> bool:
        """True once gitops-init replaced the Helm releases with ArgoCD Applications."""
        if not ctx.get("ARGOCD_URL"):
            return False
        apps = ctx.tools.kubectl_json("get", "applications.argoproj.io", "-n", ctx.config.argocd_namespace)
        present = {item["metadata"]["name"] for item in (apps or {}).get("items", [])}
        return set(application_names(ctx.config)) <= present

    def check(self, ctx):
        if self._handed_over(ctx):
            return "workloads managed by ArgoCD"
        for release in releases(ctx):
            if not self._release_current(ctx, release):
                return None
        if not ctx.tools.kubectl("get", "deployment", "rabbitmq", "-n", ctx.config.namespace, retries=0).ok:
            return None
        if ctx.get("APP_URL") != self._app_url(ctx):
            return None
        return "all releases deployed with current values"

    def run(self, ctx):
        config = ctx.config
        tools = ctx.tools

        tools.kubectl_apply(namespace_manifest(config.namespace, config.project_name), "create namespace")
        ctx.remember("APP_NAMESPACE", config.namespace)

        for repo, url in HELM_REPOS.items():
            tools.helm("repo", "add", repo, url, "--force-update", timeout=120).check(f"helm repo add {repo}")
        tools.helm("repo", "update", timeout=300).check("helm repo update")

        all_releases = releases(ctx)
        for release in all_releases[:2]:
            ctx.check_abort(f"install {release.name}")
            tools.helm(*release.install_args()).check(f"install {release.name}")

        ctx.check_abort("install rabbitmq")
        tools.kubectl_apply(rabbitmq_manifest(config.namespace), "install rabbitmq")

        for release in all_releases[2:]:
            ctx.check_abort(f"install {release.name}")
            tools.helm(*release.install_args()).check(f"install {release.name}")

        description = f"pods ready in {config.namespace}"
        poll = ctx.poll(
            lambda: tools.kubectl("get", "pods", "-n", config.namespace, "-o", "json", retries=0),
            lambda result: not pending_pods(json.loads(result.stdout or "{}")),
            description,
            timeout=config.timeouts.pods_ready,
        )
        if poll.status == PollStatus.TIMEOUT and poll.last is not None and poll.last.ok:
            pending = pending_pods(json.loads(poll.last.stdout or "{}"))
            raise PollTimeout(description, "local", f"not ready: {', '.join(pending)}")
        poll.raise_for_status()

        ctx.remember("APP_URL", self._app_url(ctx))
