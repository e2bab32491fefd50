"""Tests for the cluster-init phase."""

import json

import pytest
import yaml

from kubestage.errors import PartialCompletion, PollTimeout
from kubestage.phases.cluster import (
    KUBEADM_INIT_SCRIPT,
    ClusterInitPhase,
    calico_manifest_url,
    ready_nodes,
)

JOIN = "kubeadm join 10.0.1.10:6443 --token abcdef.0123456789abcdef --discovery-token-ca-cert-hash sha256:1234"

ADMIN_CONF = yaml.safe_dump({
    "apiVersion": "v1",
    "kind": "Config",
    "clusters": [{
        "name": "kubernetes",
        "cluster": {"server": "https://10.0.1.10:6443", "certificate-authority-data": "LS0tLS1CRUdJTg=="},
    }],
    "users": [{"name": "kubernetes-admin", "user": {"client-certificate-data": "Y2VydA=="}}],
})

NODES_READY = "\n".join([
    "ip-10-0-1-10   Ready    control-plane   9m    v1.28.2",
    "ip-10-0-1-11   Ready    <none>          2m    v1.28.2",
    "ip-10-0-1-12   Ready    <none>          2m    v1.28.2",
])


def _nodes_json(*statuses):
    return {
        "items": [
            {
                "metadata": {"name": f"node-{i}"},
                "status": {"conditions": [{"type": "Ready", "status": status}]},
            }
            for i, status in enumerate(statuses)
        ]
    }


def _fresh_nodes(ssh_transport, nodes_output=NODES_READY):
    """Script nodes with nothing installed yet."""
    ssh_transport.on("test -f /etc/kubernetes/admin.conf", exit_code=1)
    ssh_transport.on("kubectl get daemonset calico-node", exit_code=1, stderr="NotFound")
    ssh_transport.on("test -f /etc/kubernetes/kubelet.conf", exit_code=1)
    ssh_transport.on("kubeadm token create", stdout=JOIN + "\n")
    ssh_transport.on("sudo cat /etc/kubernetes/admin.conf", stdout=ADMIN_CONF)
    ssh_transport.on("kubectl get nodes --no-headers", stdout=nodes_output)
    return ssh_transport


@pytest.fixture
def fresh_nodes(ssh_transport):
    return _fresh_nodes(ssh_transport)


def test_ready_nodes():
    assert ready_nodes(_nodes_json("True", "False", "True")) == ["node-0", "node-2"]
    assert ready_nodes(None) == []


def test_calico_manifest_url():
    assert calico_manifest_url("v3.26.1").endswith("/calico/v3.26.1/manifests/calico.yaml")


class TestRun:
    """Building the cluster over SSH."""

    def test_fresh_cluster(self, make_context, fresh_nodes, store, config, cluster_facts):
        """A fresh set of nodes is initialised, joined and exported."""
        ClusterInitPhase().run(make_context())

        init = [c for c in fresh_nodes.calls if c.options.stdin == KUBEADM_INIT_SCRIPT]
        assert [c.target for c in init] == ["master"]
        assert init[0].options.env["PUBLIC_IP"] == "3.91.10.20"
        assert init[0].options.env["POD_CIDR"] == config.pod_network_cidr

        assert fresh_nodes.ran("kubectl apply -f " + calico_manifest_url(config.calico_version))
        joins = sorted(c.target for c in fresh_nodes.calls if c.command == f"sudo {JOIN}")
        assert joins == ["worker1", "worker2"]

        assert store.get("K8S_JOIN_COMMAND") == JOIN
        assert store.get("K8S_API_ENDPOINT") == "https://3.91.10.20:6443"
        assert store.get("K8S_POD_CIDR") == "192.168.0.0/16"
        assert store.get("KUBECONFIG_PATH") == str(config.path(config.kubeconfig_path))

        written = yaml.safe_load(config.path(config.kubeconfig_path).read_text())
        cluster = written["clusters"][0]["cluster"]
        assert cluster["server"] == "https://3.91.10.20:6443"
        assert cluster["insecure-skip-tls-verify"] is True
        assert "certificate-authority-data" not in cluster

    def test_scripts_run_on_every_node(self, make_context, fresh_nodes, cluster_facts):
        """Prerequisites and the credential provider go to all three nodes."""
        ClusterInitPhase().run(make_context())
        provider = [c for c in fresh_nodes.calls if c.options.stdin and "ecr-credential-provider" in c.options.stdin]
        assert {c.target for c in provider} == {"master", "worker1", "worker2"}
        assert all(c.options.env["ECR_PROVIDER_MIN_SIZE"] == "10000000" for c in provider)

    def test_rerun_skips_finished_steps(self, make_context, ssh_transport, cluster_facts):
        """An initialised control plane, Calico and joined workers are left alone."""
        ssh_transport.on("kubeadm token create", stdout=JOIN)
        ssh_transport.on("kubectl get nodes --no-headers", stdout=NODES_READY)
        ssh_transport.on("sudo cat /etc/kubernetes/admin.conf", stdout=ADMIN_CONF)

        ClusterInitPhase().run(make_context())

        assert not any(c.options.stdin == KUBEADM_INIT_SCRIPT for c in ssh_transport.calls)
        assert not ssh_transport.ran("kubectl apply -f")
        assert not ssh_transport.ran("sudo kubeadm join")

    def test_one_worker_fails_to_join(self, make_context, ssh_transport, store, cluster_facts):
        """A failed join names the failed and the joined worker."""
        ssh_transport.on("sudo kubeadm join", exit_code=1, stderr="port 10250 in use", target="worker2")
        _fresh_nodes(ssh_transport)

        with pytest.raises(PartialCompletion) as exc_info:
            ClusterInitPhase().run(make_context())
        assert exc_info.value.failed_targets == ["worker2"]
        assert exc_info.value.succeeded_targets == ["worker1"]
        # The join command learned before the failure is kept
        assert store.get("K8S_JOIN_COMMAND") == JOIN

    def test_nodes_never_ready(self, make_context, ssh_transport, cluster_facts):
        """Nodes that never report Ready time out the poll."""
        _fresh_nodes(ssh_transport, nodes_output=NODES_READY.replace("Ready", "NotReady"))
        with pytest.raises(PollTimeout):
            ClusterInitPhase().run(make_context())


class TestCheck:
    """Idempotency predicate."""

    def test_no_kubeconfig(self, make_context, cluster_facts):
        """Without a workstation kubeconfig the phase must run."""
        assert ClusterInitPhase().check(make_context()) is None

    def test_all_nodes_ready(self, make_context, transport, store, config, cluster_facts):
        """Matching endpoint, join command and three Ready nodes skip the phase."""
        endpoint = "https://3.91.10.20:6443"
        config.path(config.kubeconfig_path).write_text(yaml.safe_dump({
            "clusters": [{"name": "kubernetes", "cluster": {"server": endpoint}}],
        }))
        store.set("K8S_API_ENDPOINT", endpoint)
        store.set("K8S_JOIN_COMMAND", JOIN)
        transport.on("kubectl get nodes", stdout=json.dumps(_nodes_json("True", "True", "True")))

        assert "3 nodes Ready" in ClusterInitPhase().check(make_context())

    def test_stale_endpoint(self, make_context, store, config, cluster_facts):
        """A kubeconfig pointing at an old IP needs a rerun."""
        config.path(config.kubeconfig_path).write_text(yaml.safe_dump({
            "clusters": [{"name": "kubernetes", "cluster": {"server": "https://54.0.0.1:6443"}}],
        }))
        store.set("K8S_API_ENDPOINT", "https://3.91.10.20:6443")
        store.set("K8S_JOIN_COMMAND", JOIN)
        assert ClusterInitPhase().check(make_context()) is None
