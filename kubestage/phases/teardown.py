"""
Teardown phases, run in reverse order of construction:

    destroy-gitops -> destroy-workloads -> destroy-dynamodb
        -> destroy-infrastructure [-> destroy-backend]

Each one treats "already gone" as its idempotency predicate, so a teardown
interrupted half-way can simply be run again. Cluster-level phases skip
when the cluster cannot be reached at all: the nodes go away with the
infrastructure anyway.
"""

import logging

from kubestage.errors import PartialCompletion, RemoteCommandFailed, Unrecoverable
from kubestage.phases.base import Phase
from kubestage.phases.infrastructure import NODE_FACTS
from kubestage.preflight import AwsCredentials, LocalDirectory, Tool

logger = logging.getLogger(__name__)

CLUSTER_FACTS = (
    "K8S_API_ENDPOINT",
    "K8S_POD_CIDR",
    "K8S_VERSION",
    "K8S_JOIN_COMMAND",
    "KUBECONFIG_PATH",
)


def _namespace_exists(ctx, namespace: str) -> bool:
    result = ctx.tools.kubectl("get", "namespace", namespace, "--ignore-not-found", "-o", "name")
    result.check(f"get namespace {namespace}")
    return bool(result.stdout.strip())


def _wait_namespaces_gone(ctx, namespaces: list[str]) -> None:
    for namespace in namespaces:
        ctx.poll(
            lambda: ctx.tools.kubectl(
                "get", "namespace", namespace, "--ignore-not-found", "-o", "name", retries=0
            ),
            lambda result: not result.stdout.strip(),
            f"namespace {namespace} deleted",
            timeout=ctx.config.timeouts.pods_ready,
        ).raise_for_status()


class DestroyGitopsPhase(Phase):
    name = "destroy-gitops"
    description = "Delete ArgoCD Applications and the ArgoCD installation"
    destructive = True

    def requirements(self, ctx):
        return [Tool("kubectl")]

    def check(self, ctx):
        if not ctx.tools.cluster_reachable():
            return "cluster unreachable"
        if not _namespace_exists(ctx, ctx.config.argocd_namespace):
            return f"namespace {ctx.config.argocd_namespace} absent"
        return None

    def run(self, ctx):
        config = ctx.config
        tools = ctx.tools
        ns = config.argocd_namespace

        # Applications first so their finalizers prune what they deployed
        tools.kubectl(
            "delete", "applications.argoproj.io", "--all", "-n", ns, "--ignore-not-found", "--timeout=120s",
            timeout=180,
        ).check("delete ArgoCD applications")
        tools.kubectl(
            "delete", "-n", ns, "-f", config.argocd_manifest_url, "--ignore-not-found", timeout=300,
        ).check("uninstall ArgoCD")
        tools.kubectl("delete", "namespace", ns, "--ignore-not-found", "--wait=false").check(
            f"delete namespace {ns}"
        )
        _wait_namespaces_gone(ctx, [ns])
        ctx.forget("ARGOCD_URL", "ARGOCD_ADMIN_PASSWORD")


class DestroyWorkloadsPhase(Phase):
    name = "destroy-workloads"
    description = "Uninstall Helm releases and delete the application namespaces"
    destructive = True

    def requirements(self, ctx):
        return [Tool("kubectl"), Tool("helm")]

    def _namespaces(self, ctx) -> list[str]:
        return [ctx.config.namespace, ctx.config.ingress_namespace]

    def _installed(self, ctx) -> list[dict]:
        installed = []
        for namespace in self._namespaces(ctx):
            releases = ctx.tools.helm_releases(namespace)
            if releases is None:
                raise RemoteCommandFailed("helm list", {"local": f"cannot list releases in {namespace}"})
            installed.extend(releases)
        return installed

    def check(self, ctx):
        if not ctx.tools.cluster_reachable():
            return "cluster unreachable"
        if self._installed(ctx):
            return None
        if any(_namespace_exists(ctx, ns) for ns in self._namespaces(ctx)):
            return None
        return "no releases installed and namespaces absent"

    def run(self, ctx):
        tools = ctx.tools
        failed = {}
        succeeded = []
        for release in self._installed(ctx):
            name, namespace = release["name"], release["namespace"]
            ctx.check_abort(f"uninstall {name}")
            result = tools.helm("uninstall", name, "-n", namespace, "--wait", "--timeout", "2m")
            if result.ok:
                succeeded.append(name)
            else:
                failed[name] = result.summary()
                logger.warning(f"helm uninstall {name} failed: {result.summary()}", extra={"phase": self.name})

        if failed:
            if succeeded:
                raise PartialCompletion("uninstall Helm releases", failed, succeeded)
            raise RemoteCommandFailed("uninstall Helm releases", failed)

        namespaces = self._namespaces(ctx)
        for namespace in namespaces:
            tools.kubectl("delete", "namespace", namespace, "--ignore-not-found", "--wait=false").check(
                f"delete namespace {namespace}"
            )
        _wait_namespaces_gone(ctx, namespaces)
        ctx.forget("APP_NAMESPACE", "APP_URL")


class DestroyDynamoDBPhase(Phase):
    name = "destroy-dynamodb"
    description = "Delete the cart DynamoDB table"
    destructive = True

    def requirements(self, ctx):
        return [AwsCredentials()]

    def _table(self, ctx) -> str:
        return ctx.get("DYNAMODB_TABLE_NAME") or ctx.config.cart_table

    def check(self, ctx):
        table = self._table(ctx)
        if ctx.aws(lambda: ctx.cloud.describe_table(table), "describe cart table") is None:
            return f"table {table} absent"
        return None

    def run(self, ctx):
        table = self._table(ctx)
        ctx.aws(lambda: ctx.cloud.delete_table(table), "delete cart table")
        ctx.poll(
            lambda: ctx.executor.call(ctx.cloud_target, lambda: ctx.cloud.describe_table(table)),
            lambda result: result.value is None,
            f"table {table} deleted",
            timeout=ctx.config.timeouts.table_active,
        ).raise_for_status()
        ctx.forget("DYNAMODB_TABLE_NAME", "DYNAMODB_REGION", "DYNAMODB_TABLE_ARN")


class DestroyInfrastructurePhase(Phase):
    name = "destroy-infrastructure"
    description = "Destroy EC2 instances, VPC, IAM roles and ECR repositories with terraform destroy"
    destructive = True

    def requirements(self, ctx):
        return [Tool("terraform"), LocalDirectory(ctx.config.path(ctx.config.terraform_dir))]

    def _remediation(self, ctx) -> str:
        return f"cd {ctx.config.path(ctx.config.terraform_dir)} && terraform destroy -auto-approve"

    def check(self, ctx):
        result = ctx.tools.terraform("state", "list", "-no-color")
        if result.ok and not result.stdout.strip():
            return "no resources in Terraform state"
        return None

    def run(self, ctx):
        result = ctx.tools.terraform(
            "destroy", "-auto-approve", "-input=false", "-lock-timeout=60s", "-no-color",
            timeout=ctx.config.timeouts.command * 3,
        )
        if not result.ok:
            # Terraform may have removed part of the infrastructure already
            raise Unrecoverable(f"terraform destroy failed ({result.summary()})", self._remediation(ctx))

        node_keys = [node.key(suffix) for node in ctx.config.nodes for suffix in NODE_FACTS]
        ecr_keys = sorted(key for key in ctx.store.snapshot() if key.startswith("ECR_"))
        ctx.forget(*node_keys, *ecr_keys, *CLUSTER_FACTS)


class DestroyBackendPhase(Phase):
    name = "destroy-backend"
    description = "Empty and delete the Terraform state bucket and lock table"
    destructive = True

    def requirements(self, ctx):
        return [AwsCredentials()]

    def _names(self, ctx) -> tuple:
        config = ctx.config
        return ctx.get("TF_STATE_BUCKET") or config.state_bucket, ctx.get("TF_LOCK_TABLE") or config.lock_table

    def check(self, ctx):
        bucket, table = self._names(ctx)
        if ctx.aws(lambda: ctx.cloud.bucket_exists(bucket), "check state bucket"):
            return None
        if ctx.aws(lambda: ctx.cloud.describe_table(table), "describe lock table") is not None:
            return None
        return "state bucket and lock table absent"

    def run(self, ctx):
        bucket, table = self._names(ctx)
        ctx.aws(lambda: ctx.cloud.delete_bucket(bucket), "delete state bucket")
        ctx.aws(lambda: ctx.cloud.delete_table(table), "delete lock table")
        ctx.forget("TF_STATE_BUCKET", "TF_LOCK_TABLE")
