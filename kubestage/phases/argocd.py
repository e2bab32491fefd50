"""
gitops-init - hand the workloads over to ArgoCD.

Helm releases installed by ``deploy`` are removed (ingress-nginx stays),
ArgoCD is installed and exposed on a NodePort, and one Application per
chart in the GitOps repository is applied and waited on until it is
Synced and Healthy.
"""

import base64
import binascii
import json
import logging

from kubestage.errors import RemoteCommandFailed
from kubestage.phases.base import Phase
from kubestage.phases.gitops import application_names, render_repository
from kubestage.phases.workloads import releases
from kubestage.preflight import Facts, Tool

logger = logging.getLogger(__name__)

INITIAL_SECRET = "argocd-initial-admin-secret"


def application_status(data) -> dict[str, tuple]:
    """{application name: (sync status, health status)} from ``kubectl get applications -o json``."""
    status = {}
    for item in (data or {}).get("items", []):
        app_status = item.get("status", {})
        status[item["metadata"]["name"]] = (
            app_status.get("sync", {}).get("status"),
            app_status.get("health", {}).get("status"),
        )
    return status


def unsynced(status: dict[str, tuple], expected: list[str]) -> list[str]:
    return [name for name in expected if status.get(name) != ("Synced", "Healthy")]


def decode_password(encoded: str) -> str:
    try:
        return base64.b64decode(encoded.strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise RemoteCommandFailed("read ArgoCD admin password", {"local": f"undecodable secret: {e}"})


class GitopsInitPhase(Phase):
    name = "gitops-init"
    description = "Install ArgoCD, expose its UI and let it sync the GitOps repository"
    requires = ("deploy", "gitops-repo")
    produces = ("ARGOCD_URL", "ARGOCD_ADMIN_PASSWORD")

    def requirements(self, ctx):
        return [
            Facts("KUBECONFIG_PATH", produced_by="cluster-init"),
            Facts("GITOPS_REPO_URL", produced_by="gitops-repo"),
            Facts("ECR_REGISTRY", ctx.config.control_plane.key("PUBLIC_IP"), produced_by="apply"),
            Facts("DYNAMODB_TABLE_NAME", produced_by="dynamodb"),
            Tool("kubectl"),
            Tool("helm"),
        ]

    def _argocd_url(self, ctx) -> str:
        master_ip = ctx.require(ctx.config.control_plane.key("PUBLIC_IP"))
        return f"http://{master_ip}:{ctx.config.argocd_nodeport}"

    def _server_available(self, ctx) -> bool:
        deployment = ctx.tools.kubectl_json("get", "deployment", "argocd-server", "-n", ctx.config.argocd_namespace)
        return bool(deployment) and (deployment.get("status", {}).get("availableReplicas") or 0) >= 1

    def check(self, ctx):
        if not self._server_available(ctx):
            return None
        if not ctx.get("ARGOCD_ADMIN_PASSWORD") or ctx.get("ARGOCD_URL") != self._argocd_url(ctx):
            return None
        apps = ctx.tools.kubectl_json("get", "applications.argoproj.io", "-n", ctx.config.argocd_namespace)
        if unsynced(application_status(apps), application_names(ctx.config)):
            return None
        return "ArgoCD running, all applications Synced and Healthy"

    def _uninstall_helm_releases(self, ctx):
        config = ctx.config
        tools = ctx.tools
        installed = {r.get("name") for r in tools.helm_releases(config.namespace) or []}
        for release in releases(ctx):
            if release.namespace != config.namespace or release.name not in installed:
                continue
            ctx.check_abort(f"uninstall {release.name}")
            tools.helm("uninstall", release.name, "-n", release.namespace, "--wait", "--timeout", "3m").check(
                f"helm uninstall {release.name}"
            )
        tools.kubectl(
            "delete", "deployment,service", "rabbitmq", "-n", config.namespace, "--ignore-not-found"
        ).check("delete rabbitmq")

    def run(self, ctx):
        config = ctx.config
        tools = ctx.tools
        ns = config.argocd_namespace

        self._uninstall_helm_releases(ctx)

        ctx.check_abort("install ArgoCD")
        tools.kubectl_apply(
            json.dumps({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": ns}}),
            "create argocd namespace",
        )
        tools.kubectl(
            "apply", "-n", ns, "--server-side", "--force-conflicts", "-f", config.argocd_manifest_url,
            timeout=300,
        ).check("install ArgoCD")

        tools.kubectl(
            "patch", "configmap", "argocd-cmd-params-cm", "-n", ns,
            "--type", "merge", "-p", json.dumps({"data": {"server.insecure": "true"}}),
        ).check("configure ArgoCD insecure mode")
        tools.kubectl(
            "patch", "svc", "argocd-server", "-n", ns, "-p",
            json.dumps({"spec": {"type": "NodePort", "ports": [
                {"name": "http", "port": 80, "targetPort": 8080, "nodePort": config.argocd_nodeport},
            ]}}),
        ).check("expose ArgoCD")
        tools.kubectl("rollout", "restart", "deployment", "argocd-server", "-n", ns).check("restart argocd-server")

        ctx.poll(
            lambda: tools.kubectl("get", "deployment", "argocd-server", "-n", ns, "-o", "json", retries=0),
            lambda result: (json.loads(result.stdout).get("status", {}).get("availableReplicas") or 0) >= 1,
            "argocd-server available",
            timeout=config.timeouts.argocd_ready,
        ).raise_for_status()
        ctx.remember("ARGOCD_URL", self._argocd_url(ctx))

        secret = ctx.poll(
            lambda: tools.kubectl(
                "get", "secret", INITIAL_SECRET, "-n", ns, "-o", "jsonpath={.data.password}", retries=0
            ),
            lambda result: bool(result.stdout.strip()),
            "ArgoCD initial admin secret",
            timeout=config.timeouts.argocd_ready,
        ).raise_for_status()
        ctx.remember("ARGOCD_ADMIN_PASSWORD", decode_password(secret.last.stdout))

        ctx.check_abort("apply ArgoCD applications")
        files = render_repository(ctx)
        manifests = [content for path, content in sorted(files.items()) if path.startswith("argocd/applications/")]
        tools.kubectl_apply("---\n".join(manifests), "apply ArgoCD applications")

        expected = application_names(config)
        poll = ctx.poll(
            lambda: tools.kubectl("get", "applications.argoproj.io", "-n", ns, "-o", "json", retries=0),
            lambda result: not unsynced(application_status(json.loads(result.stdout or "{}")), expected),
            "applications Synced and Healthy",
            timeout=config.timeouts.argocd_ready,
        )
        if not poll.ok and poll.last is not None and poll.last.ok:
            pending = unsynced(application_status(json.loads(poll.last.stdout or "{}")), expected)
            logger.error(f"Applications not Synced/Healthy: {', '.join(pending)}", extra={"phase": self.name})
        poll.raise_for_status()

