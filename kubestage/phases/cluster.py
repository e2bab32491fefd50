"""
cluster-init - kubeadm cluster on the EC2 nodes.

Steps, each safe to repeat:
1. every node reachable over SSH
2. node prerequisites (swap, kernel modules, sysctl, containerd)
3. ECR credential provider binary (size-verified) and its config
4. kubelet/kubeadm/kubectl packages
5. kubelet flags pointing at the credential provider
6. kubeadm init on the control plane unless admin.conf exists
7. Calico CNI unless calico-node exists
8. join command; join workers that have no kubelet.conf
9. wait for every node Ready
10. fetch admin.conf, rewrite it for the public endpoint
11. verify the running kubelet uses the credential provider flags

Image pulls from ECR authenticate through the node IAM role and the kubelet
image credential provider; no registry secrets are created.
"""

import logging
import shlex

from kubestage import kubeconfig
from kubestage.errors import RemoteCommandFailed
from kubestage.phases.base import Phase
from kubestage.phases.infrastructure import NODE_FACTS
from kubestage.preflight import Facts, LocalFile, Tool

logger = logging.getLogger(__name__)

CREDENTIAL_PROVIDER_CONFIG = "/etc/kubernetes/ecr-credential-provider-config.yaml"
KUBELET_EXTRA_ARGS = (
    f"--image-credential-provider-config={CREDENTIAL_PROVIDER_CONFIG} "
    "--image-credential-provider-bin-dir=/usr/local/bin"
)

PREREQUISITES_SCRIPT = r"""
set -euo pipefail
sudo swapoff -a
sudo sed -i '/ swap / s/^/#/' /etc/fstab
printf 'overlay\nbr_netfilter\n' | sudo tee /etc/modules-load.d/k8s.conf >/dev/null
sudo modprobe overlay
sudo modprobe br_netfilter
printf 'net.bridge.bridge-nf-call-iptables  = 1\nnet.bridge.bridge-nf-call-ip6tables = 1\nnet.ipv4.ip_forward                 = 1\n' \
  | sudo tee /etc/sysctl.d/k8s.conf >/dev/null
sudo sysctl --system >/dev/null
if ! command -v containerd >/dev/null; then
  sudo apt-get update -qq
  sudo DEBIAN_FRONTEND=noninteractive apt-get install -y -qq apt-transport-https ca-certificates curl gpg containerd
fi
if ! grep -q 'SystemdCgroup = true' /etc/containerd/config.toml 2>/dev/null; then
  sudo mkdir -p /etc/containerd
  containerd config default | sudo tee /etc/containerd/config.toml >/dev/null
  sudo sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
  sudo systemctl restart containerd
fi
sudo systemctl enable containerd >/dev/null 2>&1
"""

ECR_PROVIDER_SCRIPT = r"""
set -euo pipefail
BIN=/usr/local/bin/ecr-credential-provider
size=$(stat -c%s "$BIN" 2>/dev/null || echo 0)
if [ "$size" -lt "$ECR_PROVIDER_MIN_SIZE" ]; then
  sudo curl -fsSL -o "$BIN" "$ECR_PROVIDER_URL"
  size=$(stat -c%s "$BIN" 2>/dev/null || echo 0)
  if [ "$size" -lt "$ECR_PROVIDER_MIN_SIZE" ]; then
    sudo rm -f "$BIN"
    echo "ecr-credential-provider download is only $size bytes" >&2
    exit 1
  fi
fi
sudo chmod +x "$BIN"
sudo mkdir -p /etc/kubernetes
sudo tee "$CREDENTIAL_PROVIDER_CONFIG" >/dev/null <<'EOF'
apiVersion: kubelet.config.k8s.io/v1
kind: CredentialProviderConfig
providers:
  - name: ecr-credential-provider
    matchImages:
      - "*.dkr.ecr.*.amazonaws.com"
      - "*.dkr.ecr.*.amazonaws.com.cn"
      - "*.dkr.ecr-fips.*.amazonaws.com"
    defaultCacheDuration: "12h"
    apiVersion: credentialprovider.kubelet.k8s.io/v1
EOF
"""

PACKAGES_SCRIPT = r"""
set -euo pipefail
if command -v kubeadm >/dev/null && kubeadm version -o short | grep -q "^v${K8S_VERSION}\."; then
  exit 0
fi
sudo mkdir -p -m 755 /etc/apt/keyrings
curl -fsSL "https://pkgs.k8s.io/core:/stable:/v${K8S_VERSION}/deb/Release.key" \
  | sudo gpg --batch --yes --dearmor -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg
echo "deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] https://pkgs.k8s.io/core:/stable:/v${K8S_VERSION}/deb/ /" \
  | sudo tee /etc/apt/sources.list.d/kubernetes.list >/dev/null
sudo apt-get update -qq
sudo DEBIAN_FRONTEND=noninteractive apt-get install -y -qq kubelet kubeadm kubectl
sudo apt-mark hold kubelet kubeadm kubectl >/dev/null
"""

KUBELET_FLAGS_SCRIPT = r"""
set -euo pipefail
if grep -q image-credential-provider-config /etc/default/kubelet 2>/dev/null; then
  exit 0
fi
if grep -q '^KUBELET_EXTRA_ARGS="' /etc/default/kubelet 2>/dev/null; then
  sudo sed -i "s|^KUBELET_EXTRA_ARGS=\"|KUBELET_EXTRA_ARGS=\"$KUBELET_EXTRA_ARGS |" /etc/default/kubelet
else
  echo "KUBELET_EXTRA_ARGS=\"$KUBELET_EXTRA_ARGS\"" | sudo tee -a /etc/default/kubelet >/dev/null
fi
"""

KUBEADM_INIT_SCRIPT = r"""
set -euo pipefail
sudo kubeadm init \
  --pod-network-cidr="$POD_CIDR" \
  --apiserver-cert-extra-sans="$PUBLIC_IP" \
  --control-plane-endpoint="$PRIVATE_IP"
"""

KUBECTL_SETUP_SCRIPT = r"""
set -euo pipefail
mkdir -p "$HOME/.kube"
sudo cp -f /etc/kubernetes/admin.conf "$HOME/.kube/config"
sudo chown "$(id -u):$(id -g)" "$HOME/.kube/config"
"""

VERIFY_KUBELET_SCRIPT = r"""
set -uo pipefail
if pgrep -a kubelet | grep -q image-credential-provider-config; then
  exit 0
fi
FLAGS=/var/lib/kubelet/kubeadm-flags.env
if [ -f "$FLAGS" ] && ! grep -q image-credential-provider "$FLAGS"; then
  sudo sed -i "s|\"$| $KUBELET_EXTRA_ARGS\"|" "$FLAGS"
fi
sudo systemctl daemon-reload
sudo systemctl restart kubelet
sleep 5
if ! pgrep -a kubelet | grep -q image-credential-provider-config; then
  echo "kubelet is not running with the credential provider flags" >&2
  exit 1
fi
"""

BASH = "bash -s"


def ready_nodes(nodes_json) -> list[str]:
    """Names of nodes whose Ready condition is True."""
    ready = []
    for item in (nodes_json or {}).get("items", []):
        for condition in item.get("status", {}).get("conditions", []):
            if condition.get("type") == "Ready" and condition.get("status") == "True":
                ready.append(item["metadata"]["name"])
    return ready


def calico_manifest_url(version: str) -> str:
    return f"https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests/calico.yaml"


class ClusterInitPhase(Phase):
    name = "cluster-init"
    description = "Install Kubernetes on the nodes, kubeadm init, Calico, join workers"
    requires = ("apply",)
    produces = ("K8S_API_ENDPOINT", "K8S_POD_CIDR", "K8S_VERSION", "K8S_JOIN_COMMAND", "KUBECONFIG_PATH")

    def requirements(self, ctx):
        keys = [node.key(suffix) for node in ctx.config.nodes for suffix in NODE_FACTS[1:]]
        return [
            LocalFile(ctx.key_file, hint="Set key_file in config.yaml to the EC2 private key"),
            Facts(*keys, produced_by="apply"),
            Tool("kubectl"),
        ]

    def _endpoint(self, ctx) -> str:
        return kubeconfig.api_endpoint(ctx.require(ctx.config.control_plane.key("PUBLIC_IP")))

    def check(self, ctx):
        path = ctx.tools.kubeconfig
        if not path.exists():
            return None
        endpoint = self._endpoint(ctx)
        if ctx.get("K8S_API_ENDPOINT") != endpoint or kubeconfig.server_of(path) != endpoint:
            return None
        if not ctx.get("K8S_JOIN_COMMAND"):
            return None
        ready = ready_nodes(ctx.tools.kubectl_json("get", "nodes"))
        if len(ready) < len(ctx.config.nodes):
            return None
        return f"{len(ready)} nodes Ready at {endpoint}"

    def _script_env(self, ctx) -> dict[str, str]:
        config = ctx.config
        return {
            "K8S_VERSION": config.kubernetes_version,
            "ECR_PROVIDER_URL": config.ecr_provider_url,
            "ECR_PROVIDER_MIN_SIZE": str(config.ecr_provider_min_size),
            "CREDENTIAL_PROVIDER_CONFIG": CREDENTIAL_PROVIDER_CONFIG,
            "KUBELET_EXTRA_ARGS": KUBELET_EXTRA_ARGS,
        }

    def _broadcast_script(self, ctx, targets, script: str, operation: str):
        ctx.check_abort(operation)
        logger.info(f"{operation} on {len(targets)} nodes", extra={"phase": self.name})
        options = ctx.options(stdin=script, env=self._script_env(ctx))
        return ctx.executor.broadcast(targets, BASH, options).raise_for_failures(operation)

    def run(self, ctx):
        config = ctx.config
        control_plane = config.control_plane
        targets = {node.prefix: ctx.node_target(node) for node in config.nodes}
        master = targets[control_plane.prefix]
        workers = [targets[node.prefix] for node in config.workers]
        all_targets = list(targets.values())

        ctx.executor.broadcast(all_targets, "true", ctx.options(timeout=30)).raise_for_failures("ssh reachability")

        self._broadcast_script(ctx, all_targets, PREREQUISITES_SCRIPT, "node prerequisites")
        self._broadcast_script(ctx, all_targets, ECR_PROVIDER_SCRIPT, "install ECR credential provider")
        self._broadcast_script(ctx, all_targets, PACKAGES_SCRIPT, "install Kubernetes packages")
        self._broadcast_script(ctx, all_targets, KUBELET_FLAGS_SCRIPT, "configure kubelet credential provider")

        # Control plane
        ctx.check_abort("kubeadm init")
        if ctx.ssh(master, "test -f /etc/kubernetes/admin.conf", retries=0).ok:
            logger.info("Control plane already initialised", extra={"phase": self.name})
        else:
            env = {
                "POD_CIDR": config.pod_network_cidr,
                "PUBLIC_IP": ctx.require(control_plane.key("PUBLIC_IP")),
                "PRIVATE_IP": ctx.require(control_plane.key("PRIVATE_IP")),
            }
            ctx.ssh(master, BASH, stdin=KUBEADM_INIT_SCRIPT, env=env, retries=0).check("kubeadm init")
        ctx.ssh(master, BASH, stdin=KUBECTL_SETUP_SCRIPT).check("kubectl setup on control plane")
        ctx.remember("K8S_POD_CIDR", config.pod_network_cidr)
        ctx.remember("K8S_VERSION", config.kubernetes_version)

        # CNI
        ctx.check_abort("install Calico")
        if not ctx.ssh(master, "kubectl get daemonset calico-node -n kube-system", retries=0).ok:
            ctx.ssh(master, f"kubectl apply -f {shlex.quote(calico_manifest_url(config.calico_version))}").check(
                "install Calico"
            )

        # Workers
        join = ctx.ssh(master, "sudo kubeadm token create --print-join-command").check("create join command")
        join_command = join.stdout.strip()
        if not join_command.startswith("kubeadm join"):
            raise RemoteCommandFailed("create join command", {master.name: f"unexpected output {join_command!r}"})
        ctx.remember("K8S_JOIN_COMMAND", join_command)

        joined = ctx.executor.broadcast(workers, "test -f /etc/kubernetes/kubelet.conf", ctx.options(retries=0))
        pending = [target for target in workers if not joined[target.name].ok]
        if pending:
            ctx.check_abort("join workers")
            ctx.executor.broadcast(pending, f"sudo {join_command}", ctx.options(retries=0)).raise_for_failures(
                "join workers"
            )

        expected = len(config.nodes)
        ctx.poll(
            lambda: ctx.ssh(master, "kubectl get nodes --no-headers", retries=0),
            lambda result: sum(
                1 for line in result.stdout.splitlines() if line.split()[1:2] == ["Ready"]
            ) >= expected,
            f"{expected} nodes Ready",
            timeout=config.timeouts.node_ready,
            unreachable_timeout=config.timeouts.unreachable,
        ).raise_for_status()

        # Workstation kubeconfig
        endpoint = self._endpoint(ctx)
        admin_conf = ctx.ssh(master, "sudo cat /etc/kubernetes/admin.conf").check("fetch admin.conf")
        path = kubeconfig.write(ctx.tools.kubeconfig, kubeconfig.rewrite(admin_conf.stdout, endpoint))
        ctx.remember("KUBECONFIG_PATH", str(path))
        ctx.remember("K8S_API_ENDPOINT", endpoint)

        self._broadcast_script(ctx, all_targets, VERIFY_KUBELET_SCRIPT, "verify kubelet credential provider")
