"""
dynamodb - the cart service's DynamoDB table.
"""

import logging

from kubestage.phases.base import Phase
from kubestage.preflight import AwsCredentials

logger = logging.getLogger(__name__)


class DynamoDBPhase(Phase):
    name = "dynamodb"
    description = "Create the cart DynamoDB table (on-demand, customerId index)"
    requires = ("init",)
    produces = ("DYNAMODB_TABLE_NAME", "DYNAMODB_REGION", "DYNAMODB_TABLE_ARN")

    def requirements(self, ctx):
        return [AwsCredentials()]

    def check(self, ctx):
        table = ctx.config.cart_table
        description = ctx.aws(lambda: ctx.cloud.describe_table(table), "describe cart table")
        if not description or description["TableStatus"] != "ACTIVE":
            return None
        if ctx.get("DYNAMODB_TABLE_ARN") != description["TableArn"] or ctx.get("DYNAMODB_TABLE_NAME") != table:
            return None
        return f"table {table} ACTIVE"

    def run(self, ctx):
        config = ctx.config
        table = config.cart_table
        created = ctx.aws(lambda: ctx.cloud.create_cart_table(table), "create cart table")
        if not created:
            logger.info(f"Table {table} already exists", extra={"phase": self.name})

        poll = ctx.poll(
            lambda: ctx.executor.call(ctx.cloud_target, lambda: ctx.cloud.describe_table(table)),
            lambda result: bool(result.value) and result.value["TableStatus"] == "ACTIVE",
            f"table {table} ACTIVE",
            timeout=config.timeouts.table_active,
        ).raise_for_status()

        ctx.remember("DYNAMODB_TABLE_NAME", table)
        ctx.remember("DYNAMODB_REGION", config.region)
        ctx.remember("DYNAMODB_TABLE_ARN", poll.value["TableArn"])
