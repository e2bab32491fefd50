"""Tests for the dynamodb and deploy phases."""

import json

import pytest
import yaml

from kubestage.errors import PollTimeout
from kubestage.phases.base import PhaseRunner, PhaseStatus
from kubestage.phases.database import DynamoDBPhase
from kubestage.phases.gitops import application_names
from kubestage.phases.workloads import (
    DeployPhase,
    Release,
    flatten_values,
    namespace_manifest,
    pending_pods,
    rabbitmq_manifest,
    releases,
)

TABLE_ARN = "arn:aws:dynamodb:us-east-1:123456789012:table/retail-store-cart"


def _table(status="ACTIVE"):
    return {"TableName": "retail-store-cart", "TableStatus": status, "TableArn": TABLE_ARN}


def _pods(*ready):
    return json.dumps({
        "items": [
            {
                "metadata": {"name": f"pod-{i}"},
                "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True" if ok else "False"}]},
            }
            for i, ok in enumerate(ready)
        ]
    })


def _nested(values):
    """Inverse of flatten_values, as ``helm get values -o json`` prints it."""
    nested = {}
    for key, value in values:
        node = nested
        *parents, leaf = key.split(".")
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return nested


@pytest.fixture
def deploy_facts(store, cluster_facts):
    store.set("K8S_API_ENDPOINT", "https://3.91.10.20:6443")
    store.set("KUBECONFIG_PATH", "/tmp/kubeconfig")
    store.set("DYNAMODB_TABLE_NAME", "retail-store-cart")
    store.set("DYNAMODB_REGION", "us-east-1")
    store.persist()


class TestDynamoDB:
    """Cart table creation."""

    def test_missing_table_needs_run(self, make_context, cloud):
        """No table means the phase must run."""
        cloud.describe_table.return_value = None
        assert DynamoDBPhase().check(make_context()) is None

    def test_active_recorded_table_is_done(self, make_context, cloud, store):
        """An ACTIVE table whose ARN is recorded skips the phase."""
        store.set("DYNAMODB_TABLE_NAME", "retail-store-cart")
        store.set("DYNAMODB_TABLE_ARN", TABLE_ARN)
        cloud.describe_table.return_value = _table()
        assert DynamoDBPhase().check(make_context()) == "table retail-store-cart ACTIVE"

    def test_run_waits_for_active(self, make_context, cloud, store, clock):
        """Facts are recorded once the table turns ACTIVE."""
        cloud.create_cart_table.return_value = True
        cloud.describe_table.side_effect = [_table("CREATING"), _table("CREATING"), _table()]

        DynamoDBPhase().run(make_context())

        cloud.create_cart_table.assert_called_once_with("retail-store-cart")
        assert store.get("DYNAMODB_TABLE_ARN") == TABLE_ARN
        assert store.get("DYNAMODB_REGION") == "us-east-1"
        assert len(clock.sleeps) == 2

    def test_run_existing_table(self, make_context, cloud, store):
        """An existing table is adopted, not recreated."""
        cloud.create_cart_table.return_value = False
        cloud.describe_table.return_value = _table()
        DynamoDBPhase().run(make_context())
        assert store.get("DYNAMODB_TABLE_NAME") == "retail-store-cart"


class TestHelpers:
    """Release definitions and manifests."""

    def test_install_args(self):
        """Values are passed with --set and booleans lower-cased."""
        release = Release("redis", "bitnami/redis", "shop", (("auth.enabled", False), ("replica.replicaCount", 0)))
        args = release.install_args()
        assert args[:4] == ["upgrade", "--install", "redis", "bitnami/redis"]
        assert "--create-namespace" in args
        assert "--wait" in args
        assert ["--set", "auth.enabled=false"] == args[-4:-2]
        assert ["--set", "replica.replicaCount=0"] == args[-2:]

    def test_flatten_values(self):
        assert flatten_values({"auth": {"enabled": False}, "image": "x"}) == {
            "auth.enabled": "false",
            "image": "x",
        }
        assert flatten_values(None) == {}

    def test_releases_use_recorded_facts(self, make_context, deploy_facts, config):
        """The application chart is pointed at the ECR registry and cart table."""
        app = releases(make_context())[2]
        assert app.name == config.project_name
        values = dict(app.values)
        assert values["global.ecr.registry"] == "123456789012.dkr.ecr.us-east-1.amazonaws.com"
        assert values["global.dynamodb.tableName"] == "retail-store-cart"

    def test_namespace_manifest_is_helm_owned(self):
        manifest = yaml.safe_load(namespace_manifest("shop", "retail-store"))
        assert manifest["metadata"]["labels"]["app.kubernetes.io/managed-by"] == "Helm"
        assert manifest["metadata"]["annotations"]["meta.helm.sh/release-name"] == "retail-store"

    def test_rabbitmq_manifest(self):
        deployment, service = yaml.safe_load_all(rabbitmq_manifest("shop"))
        assert deployment["kind"] == "Deployment"
        assert service["metadata"]["namespace"] == "shop"
        assert [p["port"] for p in service["spec"]["ports"]] == [5672, 15672]

    def test_pending_pods(self):
        """Completed pods never count as pending."""
        pods = json.loads(_pods(True, False))
        pods["items"].append({"metadata": {"name": "migrate"}, "status": {"phase": "Succeeded"}})
        assert pending_pods(pods) == ["pod-1"]


class TestDeploy:
    """Helm releases and readiness."""

    def test_preflight_before_cluster_init(self, make_context, transport, ssh_transport):
        """Deploy before cluster-init fails preflight without touching anything."""
        outcome = PhaseRunner().execute(DeployPhase(), make_context())
        assert outcome.status == PhaseStatus.FAILED
        assert outcome.error_kind == "preflight"
        assert "K8S_API_ENDPOINT" in outcome.error
        assert "cluster-init" in outcome.error
        assert transport.calls == []
        assert ssh_transport.calls == []

    def test_run_installs_in_order(self, make_context, transport, store, deploy_facts):
        """Databases first, then rabbitmq, the application and the ingress controller."""
        transport.on("kubectl get pods", stdout=_pods(True, True, True))
        DeployPhase().run(make_context())

        installs = [
            c.command.split()[3] if c.command.startswith("helm upgrade") else "rabbitmq"
            for c in transport.calls
            if c.command.startswith("helm upgrade")
            or (c.command.startswith("kubectl apply") and "rabbitmq" in (c.options.stdin or ""))
        ]
        assert installs == ["postgresql", "redis", "rabbitmq", "retail-store", "nginx-ingress"]
        assert store.get("APP_URL") == "http://3.91.10.20:30080"
        assert store.get("APP_NAMESPACE") == "retail-store"

    def test_run_reports_pending_pods(self, make_context, transport, deploy_facts):
        """Pods that never become Ready are named in the timeout."""
        transport.on("kubectl get pods", stdout=_pods(True, False))
        with pytest.raises(PollTimeout) as exc_info:
            DeployPhase().run(make_context())
        assert "pod-1" in str(exc_info.value)

    def test_check_current_releases(self, make_context, transport, store, deploy_facts, config):
        """Deployed releases with matching values, rabbitmq and the URL skip the phase."""
        store.set("APP_URL", "http://3.91.10.20:30080")
        ctx = make_context()
        by_namespace = {}
        for release in releases(ctx):
            by_namespace.setdefault(release.namespace, []).append({"name": release.name, "status": "deployed"})
            transport.on(f"helm get values {release.name} ", stdout=json.dumps(_nested(release.values)))
        for namespace, entries in by_namespace.items():
            transport.on(f"helm list -n {namespace} ", stdout=json.dumps(entries))

        assert DeployPhase().check(ctx) == "all releases deployed with current values"

    def test_check_drifted_values(self, make_context, transport, store, deploy_facts):
        """A release whose values changed is reinstalled."""
        store.set("APP_URL", "http://3.91.10.20:30080")
        transport.on("helm list -n retail-store ", stdout=json.dumps([{"name": "postgresql", "status": "deployed"}]))
        transport.on("helm get values postgresql ", stdout=json.dumps({"auth": {"database": "other"}}))
        assert DeployPhase().check(make_context()) is None

    def test_check_failed_release(self, make_context, transport, deploy_facts):
        """A release in failed status is not current."""
        transport.on("helm list", stdout=json.dumps([{"name": "postgresql", "status": "failed"}]))
        assert DeployPhase().check(make_context()) is None

    def test_check_after_argocd_handover(self, make_context, transport, store, deploy_facts, config):
        """Once ArgoCD owns the workloads, missing Helm releases do not trigger a reinstall."""
        store.set("ARGOCD_URL", "http://3.91.10.20:30090")
        transport.on("get applications.argoproj.io", stdout=json.dumps({
            "items": [{"metadata": {"name": name}} for name in application_names(config)]
        }))
        transport.on("helm list -n retail-store ", stdout="[]")

        assert DeployPhase().check(make_context()) == "workloads managed by ArgoCD"
        assert not transport.ran("helm upgrade")

    def test_check_with_missing_applications(self, make_context, transport, store, deploy_facts):
        """A recorded ArgoCD URL without the Applications still checks the releases."""
        store.set("ARGOCD_URL", "http://3.91.10.20:30090")
        transport.on("get applications.argoproj.io", stdout=json.dumps({"items": []}))
        transport.on("helm list", stdout="[]")
        assert DeployPhase().check(make_context()) is None
