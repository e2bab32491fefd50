"""
init - Terraform remote-state backend.

Creates the S3 bucket and DynamoDB lock table Terraform keeps its state in,
then runs ``terraform init`` against them. This is the phase that creates
the state file.
"""

import logging

from kubestage.phases.base import Phase
from kubestage.preflight import AwsCredentials, LocalDirectory, LocalFile, Tool

logger = logging.getLogger(__name__)


class InitPhase(Phase):
    name = "init"
    description = "Create the Terraform state bucket and lock table, run terraform init"
    produces = ("REGION", "PROJECT_NAME", "KEY_FILE", "TF_STATE_BUCKET", "TF_LOCK_TABLE")
    bootstrap = True

    def requirements(self, ctx):
        config = ctx.config
        return [
            Tool("aws"),
            Tool("terraform"),
            AwsCredentials(),
            LocalDirectory(config.path(config.terraform_dir), hint="Set terraform_dir in config.yaml"),
            LocalFile(config.path(config.key_file), hint="Create the EC2 key pair and save the private key there"),
        ]

    def _recorded(self, ctx) -> bool:
        config = ctx.config
        expected = {
            "REGION": config.region,
            "PROJECT_NAME": config.project_name,
            "TF_STATE_BUCKET": config.state_bucket,
            "TF_LOCK_TABLE": config.lock_table,
        }
        return all(ctx.get(key) == value for key, value in expected.items())

    def check(self, ctx):
        config = ctx.config
        if not self._recorded(ctx):
            return None
        if not ctx.aws(lambda: ctx.cloud.bucket_exists(config.state_bucket), "check state bucket"):
            return None
        if ctx.aws(lambda: ctx.cloud.table_status(config.lock_table), "check lock table") != "ACTIVE":
            return None
        if not (config.path(config.terraform_dir) / ".terraform").exists():
            return None
        return f"backend s3://{config.state_bucket} with lock table {config.lock_table} ready"

    def run(self, ctx):
        config = ctx.config
        ctx.remember("REGION", config.region)
        ctx.remember("PROJECT_NAME", config.project_name)
        ctx.remember("KEY_FILE", str(config.path(config.key_file)))

        ctx.aws(lambda: ctx.cloud.create_state_bucket(config.state_bucket), "create state bucket")
        ctx.remember("TF_STATE_BUCKET", config.state_bucket)

        ctx.aws(lambda: ctx.cloud.create_lock_table(config.lock_table), "create lock table")
        ctx.poll(
            lambda: ctx.executor.call(ctx.cloud_target, lambda: ctx.cloud.table_status(config.lock_table)),
            lambda result: result.value == "ACTIVE",
            f"lock table {config.lock_table} ACTIVE",
            timeout=config.timeouts.table_active,
        ).raise_for_status()
        ctx.remember("TF_LOCK_TABLE", config.lock_table)

        ctx.check_abort("terraform init")
        ctx.tools.terraform(
            "init",
            "-input=false",
            "-reconfigure",
            f"-backend-config=bucket={config.state_bucket}",
            f"-backend-config=key={config.project_name}/terraform.tfstate",
            f"-backend-config=region={config.region}",
            f"-backend-config=dynamodb_table={config.lock_table}",
            "-backend-config=encrypt=true",
        ).check("terraform init")
