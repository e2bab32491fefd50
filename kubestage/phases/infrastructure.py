"""
apply - create the AWS infrastructure with Terraform and record its outputs.

Every Terraform output becomes a store key: ``master_public_ip`` becomes
MASTER_PUBLIC_IP, and nested maps are flattened with underscores
(``ecr = {ui_repo = ...}`` becomes ECR_UI_REPO). Lists are joined with
commas.
"""

import logging
from typing import Any

from kubestage.errors import RemoteCommandFailed
from kubestage.phases.base import Phase
from kubestage.preflight import Facts, LocalDirectory, Tool

logger = logging.getLogger(__name__)

NODE_FACTS = ("INSTANCE_ID", "PUBLIC_IP", "PRIVATE_IP")

# terraform plan -detailed-exitcode
PLAN_NO_CHANGES = 0
PLAN_HAS_CHANGES = 2


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def flatten_outputs(outputs: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Turn ``terraform output -json`` values into store keys."""
    facts = {}
    for name, value in outputs.items():
        key = f"{prefix}_{name}" if prefix else name
        key = key.upper().replace("-", "_")
        if isinstance(value, dict):
            facts.update(flatten_outputs(value, key))
        elif isinstance(value, (list, tuple)):
            facts[key] = ",".join(_scalar(item) for item in value)
        else:
            facts[key] = _scalar(value)
    return facts


def missing_node_facts(ctx) -> list[str]:
    return [
        node.key(suffix)
        for node in ctx.config.nodes
        for suffix in NODE_FACTS
        if not ctx.get(node.key(suffix))
    ]


class ApplyPhase(Phase):
    name = "apply"
    description = "Create VPC, EC2 instances, IAM roles and ECR repositories with terraform apply"
    requires = ("init",)
    produces = ("*_INSTANCE_ID", "*_PUBLIC_IP", "*_PRIVATE_IP", "ECR_REGISTRY", "ECR_*_REPO")

    def requirements(self, ctx):
        return [
            Tool("terraform"),
            LocalDirectory(ctx.config.path(ctx.config.terraform_dir)),
            Facts("TF_STATE_BUCKET", "TF_LOCK_TABLE", produced_by="init"),
        ]

    def check(self, ctx):
        if missing_node_facts(ctx):
            return None
        plan = ctx.tools.terraform(
            "plan", "-detailed-exitcode", "-input=false", "-lock-timeout=60s", "-no-color"
        )
        if plan.exit_code == PLAN_NO_CHANGES:
            return "infrastructure matches the Terraform configuration"
        if plan.exit_code == PLAN_HAS_CHANGES:
            return None
        plan.check("terraform plan")
        return None

    def run(self, ctx):
        ctx.tools.terraform(
            "apply", "-auto-approve", "-input=false", "-lock-timeout=60s", "-no-color",
            timeout=ctx.config.timeouts.command * 3,
        ).check("terraform apply")

        facts = flatten_outputs(ctx.tools.terraform_output())
        ctx.remember_all(facts)

        missing = missing_node_facts(ctx)
        if missing:
            raise RemoteCommandFailed(
                "terraform output",
                {"local": f"outputs missing for {', '.join(missing)}"},
            )
        logger.info(f"Recorded {len(facts)} Terraform outputs", extra={"phase": self.name})
