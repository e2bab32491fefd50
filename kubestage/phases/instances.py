"""
start - bring stopped cluster instances back and refresh their addresses.

EC2 assigns new public IPs when a stopped instance starts, so every fact
derived from them (node addresses, the API endpoint, the workstation
kubeconfig) is refreshed here.
"""

import logging

from kubestage import kubeconfig
from kubestage.phases.base import Phase
from kubestage.preflight import AwsCredentials, Facts

logger = logging.getLogger(__name__)


class StartPhase(Phase):
    name = "start"
    description = "Start stopped EC2 instances and record their new public IPs"
    requires = ("apply",)
    produces = ("*_PUBLIC_IP", "*_PRIVATE_IP", "K8S_API_ENDPOINT")

    def _instance_ids(self, ctx) -> dict[str, str]:
        return {node.prefix: ctx.require(node.key("INSTANCE_ID")) for node in ctx.config.nodes}

    def requirements(self, ctx):
        keys = [node.key("INSTANCE_ID") for node in ctx.config.nodes]
        return [AwsCredentials(), Facts(*keys, produced_by="apply")]

    def check(self, ctx):
        ids = self._instance_ids(ctx)
        states = ctx.aws(lambda: ctx.cloud.instance_states(ids.values()), "describe instances")
        for prefix, instance_id in ids.items():
            observed = states.get(instance_id, {})
            if observed.get("state") != "running":
                return None
            if observed.get("public_ip") != ctx.get(f"{prefix}_PUBLIC_IP"):
                return None
        return "all instances running with recorded addresses"

    def run(self, ctx):
        ids = self._instance_ids(ctx)
        states = ctx.aws(lambda: ctx.cloud.instance_states(ids.values()), "describe instances")

        stopped = [i for i in ids.values() if states.get(i, {}).get("state") == "stopped"]
        if stopped:
            ctx.aws(lambda: ctx.cloud.start_instances(stopped), "start instances")

        def all_running(result) -> bool:
            return all(
                result.value.get(i, {}).get("state") == "running" and result.value[i].get("public_ip")
                for i in ids.values()
            )

        poll = ctx.poll(
            lambda: ctx.executor.call(ctx.cloud_target, lambda: ctx.cloud.instance_states(ids.values())),
            all_running,
            "instances running",
            timeout=ctx.config.timeouts.instance_running,
        ).raise_for_status()

        states = poll.value
        old_master_ip = ctx.get(ctx.config.control_plane.key("PUBLIC_IP"))
        for prefix, instance_id in ids.items():
            ctx.remember(f"{prefix}_PUBLIC_IP", states[instance_id]["public_ip"])
            ctx.remember(f"{prefix}_PRIVATE_IP", states[instance_id]["private_ip"])

        master_ip = ctx.get(ctx.config.control_plane.key("PUBLIC_IP"))
        if master_ip != old_master_ip:
            endpoint = kubeconfig.api_endpoint(master_ip)
            if ctx.get("K8S_API_ENDPOINT"):
                ctx.remember("K8S_API_ENDPOINT", endpoint)
            if kubeconfig.update_server(ctx.tools.kubeconfig, endpoint):
                logger.info(f"Kubeconfig now points at {endpoint}", extra={"phase": self.name})
