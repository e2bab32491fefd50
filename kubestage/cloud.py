"""
AWS access through boto3.

CloudClient wraps the handful of STS, S3, DynamoDB and EC2 calls the phases
need. "Not found" answers become None/False so phases can use them in
idempotency predicates; every other botocore error propagates and is
classified by RemoteExecutor.call().
"""

import logging
from typing import Iterable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchBucket", "NotFound", "ResourceNotFoundException"}


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class CloudClient:
    """
    Thin boto3 facade scoped to one region.

    Args:
        region: AWS region name
        profile: Optional named profile (otherwise the default chain, AWS_PROFILE, ...)
        session: Pre-built boto3 session, mainly for tests
    """

    def __init__(self, region: str, profile: Optional[str] = None, session=None):
        self.region = region
        self._session = session or boto3.Session(profile_name=profile, region_name=region)
        self._config = Config(retries={"max_attempts": 3, "mode": "standard"}, connect_timeout=10, read_timeout=60)
        self._clients = {}

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._session.client(service, region_name=self.region, config=self._config)
        return self._clients[service]

    # ------------------------------------------------------------------
    # STS
    # ------------------------------------------------------------------

    def identity(self) -> dict:
        return self.client("sts").get_caller_identity()

    # ------------------------------------------------------------------
    # S3 (Terraform state bucket)
    # ------------------------------------------------------------------

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client("s3").head_bucket(Bucket=bucket)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise
        return True

    def create_state_bucket(self, bucket: str) -> None:
        """Create a versioned, encrypted, private bucket for Terraform state."""
        s3 = self.client("s3")
        kwargs = {"Bucket": bucket}
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            s3.create_bucket(**kwargs)
            logger.info(f"Created S3 bucket {bucket}")
        except ClientError as e:
            if _error_code(e) != "BucketAlreadyOwnedByYou":
                raise

        s3.put_bucket_versioning(Bucket=bucket, VersioningConfiguration={"Status": "Enabled"})
        s3.put_bucket_encryption(
            Bucket=bucket,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
            },
        )
        s3.put_public_access_block(
            Bucket=bucket,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )

    def delete_bucket(self, bucket: str) -> bool:
        """Delete every object version and the bucket. Returns False if absent."""
        if not self.bucket_exists(bucket):
            return False
        s3 = self.client("s3")
        paginator = s3.get_paginator("list_object_versions")
        for page in paginator.paginate(Bucket=bucket):
            objects = [
                {"Key": item["Key"], "VersionId": item["VersionId"]}
                for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
            ]
            if objects:
                s3.delete_objects(Bucket=bucket, Delete={"Objects": objects, "Quiet": True})
        s3.delete_bucket(Bucket=bucket)
        logger.info(f"Deleted S3 bucket {bucket}")
        return True

    # ------------------------------------------------------------------
    # DynamoDB
    # ------------------------------------------------------------------

    def describe_table(self, table: str) -> Optional[dict]:
        try:
            return self.client("dynamodb").describe_table(TableName=table)["Table"]
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise

    def table_status(self, table: str) -> Optional[str]:
        description = self.describe_table(table)
        return description["TableStatus"] if description else None

    def _create_table(self, **kwargs) -> bool:
        try:
            self.client("dynamodb").create_table(BillingMode="PAY_PER_REQUEST", **kwargs)
        except ClientError as e:
            if _error_code(e) == "ResourceInUseException":
                return False
            raise
        logger.info(f"Created DynamoDB table {kwargs['TableName']}")
        return True

    def create_lock_table(self, table: str) -> bool:
        """Terraform state lock table (hash key LockID)."""
        return self._create_table(
            TableName=table,
            AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
            KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
        )

    def create_cart_table(self, table: str) -> bool:
        """Cart service table: hash key ``id`` plus a customerId index."""
        return self._create_table(
            TableName=table,
            AttributeDefinitions=[
                {"AttributeName": "id", "AttributeType": "S"},
                {"AttributeName": "customerId", "AttributeType": "S"},
            ],
            KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "idx_global_customerId",
                    "KeySchema": [{"AttributeName": "customerId", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
        )

    def delete_table(self, table: str) -> bool:
        try:
            self.client("dynamodb").delete_table(TableName=table)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise
        logger.info(f"Deleted DynamoDB table {table}")
        return True

    # ------------------------------------------------------------------
    # EC2
    # ------------------------------------------------------------------

    def instance_states(self, instance_ids: Iterable[str]) -> dict[str, dict]:
        """Return {instance_id: {"state", "public_ip", "private_ip"}}."""
        ids = list(instance_ids)
        response = self.client("ec2").describe_instances(InstanceIds=ids)
        states = {}
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                states[instance["InstanceId"]] = {
                    "state": instance["State"]["Name"],
                    "public_ip": instance.get("PublicIpAddress"),
                    "private_ip": instance.get("PrivateIpAddress"),
                }
        return states

    def start_instances(self, instance_ids: Iterable[str]) -> None:
        ids = list(instance_ids)
        if ids:
            self.client("ec2").start_instances(InstanceIds=ids)
            logger.info(f"Starting instances {', '.join(ids)}")
