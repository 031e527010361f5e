"""Remote backend: snapshots in S3, lock records in DynamoDB."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from pydantic import ValidationError

from landform.utils.errors import ErrorContext, StateError, error_handler
from landform.utils.logging import get_logger
from landform.utils.retry import with_retry

from .backend import LockTable, SnapshotStorage
from .models import LockToken

logger = get_logger(__name__)

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _epoch(value: datetime) -> str:
    """DynamoDB number for a naive UTC datetime."""
    return repr(value.replace(tzinfo=timezone.utc).timestamp())


def create_session(region: Optional[str] = None, profile: Optional[str] = None) -> boto3.Session:
    kwargs = {}
    if profile:
        kwargs["profile_name"] = profile
    if region:
        kwargs["region_name"] = region
    return boto3.Session(**kwargs)


# Client-level retries stay on; landform's own retry handles the rest
CLIENT_CONFIG = Config(
    retries={"mode": "adaptive", "max_attempts": 5},
    connect_timeout=10,
    read_timeout=30,
)


class S3SnapshotStorage(SnapshotStorage):
    """Snapshots as ``s3://<bucket>/<key_prefix>/<state_id>.json``."""

    def __init__(self, bucket: str, key_prefix: str = "landform", client=None, encrypt: bool = True):
        self.bucket = bucket
        self.key_prefix = key_prefix.strip("/")
        self.client = client or boto3.client("s3", config=CLIENT_CONFIG)
        self.encrypt = encrypt

    def _key(self, state_id: str) -> str:
        return f"{self.key_prefix}/{state_id}.json" if self.key_prefix else f"{state_id}.json"

    def describe(self, state_id: str) -> str:
        return f"s3://{self.bucket}/{self._key(state_id)}"

    def get(self, state_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._get_object(self._key(state_id))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise StateError(
                f"Failed to read snapshot {self.describe(state_id)}",
                context=ErrorContext(state_id=state_id),
                cause=error_handler.handle_exception(e)
            )

        try:
            return json.loads(response["Body"].read())
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse snapshot {self.describe(state_id)}: {e}", cause=e)

    def put(self, state_id: str, data: Dict[str, Any]) -> None:
        kwargs = {
            "Bucket": self.bucket,
            "Key": self._key(state_id),
            "Body": json.dumps(data, indent=2, default=str).encode("utf-8"),
            "ContentType": "application/json",
        }
        if self.encrypt:
            kwargs["ServerSideEncryption"] = "AES256"

        try:
            self._put_object(kwargs)
        except ClientError as e:
            raise StateError(
                f"Failed to write snapshot {self.describe(state_id)}",
                context=ErrorContext(state_id=state_id),
                cause=error_handler.handle_exception(e)
            )

    @with_retry(max_retries=3, base_delay=0.5, max_delay=5.0)
    def _get_object(self, key: str):
        return self.client.get_object(Bucket=self.bucket, Key=key)

    @with_retry(max_retries=3, base_delay=0.5, max_delay=5.0)
    def _put_object(self, kwargs: Dict[str, Any]):
        return self.client.put_object(**kwargs)


class DynamoDBLockTable(LockTable):
    """Lock records in a DynamoDB table with a string hash key ``LockID``.

    Item layout: ``LockID`` (``<key_prefix>/<state_id>``), ``LockToken``
    (lock id), ``Expires`` (epoch seconds) and ``Info`` (JSON lock record).
    All mutations are conditional writes.
    """

    def __init__(self, table_name: str, key_prefix: str = "landform", client=None):
        self.table_name = table_name
        self.key_prefix = key_prefix.strip("/")
        self.client = client or boto3.client("dynamodb", config=CLIENT_CONFIG)

    def _key(self, state_id: str) -> Dict[str, Dict[str, str]]:
        lock_key = f"{self.key_prefix}/{state_id}" if self.key_prefix else state_id
        return {"LockID": {"S": lock_key}}

    def _item(self, token: LockToken) -> Dict[str, Dict[str, str]]:
        return {
            **self._key(token.state_id),
            "LockToken": {"S": token.lock_id},
            "Expires": {"N": _epoch(token.expires_at)},
            "Info": {"S": token.model_dump_json()},
        }

    def try_acquire(self, token: LockToken, now: datetime) -> Optional[LockToken]:
        # The holder may release between our failed put and the read; try again then
        for _ in range(3):
            try:
                self.client.put_item(
                    TableName=self.table_name,
                    Item=self._item(token),
                    ConditionExpression="attribute_not_exists(LockID) OR Expires < :now",
                    ExpressionAttributeValues={":now": {"N": _epoch(now)}},
                )
                return None
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != CONDITIONAL_CHECK_FAILED:
                    raise self._state_error("acquire", token.state_id, e)

            holder = self.get(token.state_id)
            if holder is not None:
                return holder

        raise StateError(
            f"Lock on state '{token.state_id}' is changing hands too quickly to acquire",
            context=ErrorContext(state_id=token.state_id)
        )

    def get(self, state_id: str) -> Optional[LockToken]:
        try:
            response = self.client.get_item(
                TableName=self.table_name,
                Key=self._key(state_id),
                ConsistentRead=True,
            )
        except ClientError as e:
            raise self._state_error("read", state_id, e)

        item = response.get("Item")
        if not item:
            return None
        try:
            return LockToken.model_validate_json(item["Info"]["S"])
        except (KeyError, ValidationError) as e:
            raise StateError(f"Corrupted lock record for state '{state_id}': {e}", cause=e)

    def renew(self, token: LockToken, expires_at: datetime, now: datetime) -> bool:
        renewed = token.model_copy(update={"expires_at": expires_at})
        try:
            self.client.update_item(
                TableName=self.table_name,
                Key=self._key(token.state_id),
                UpdateExpression="SET Expires = :expires, Info = :info",
                ConditionExpression="LockToken = :lock_id AND Expires > :now",
                ExpressionAttributeValues={
                    ":expires": {"N": _epoch(expires_at)},
                    ":info": {"S": renewed.model_dump_json()},
                    ":lock_id": {"S": token.lock_id},
                    ":now": {"N": _epoch(now)},
                },
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise self._state_error("renew", token.state_id, e)

    def release(self, state_id: str, lock_id: str) -> bool:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key=self._key(state_id),
                ConditionExpression="LockToken = :lock_id",
                ExpressionAttributeValues={":lock_id": {"S": lock_id}},
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED:
                return False
            raise self._state_error("release", state_id, e)

    def _state_error(self, operation: str, state_id: str, error: ClientError) -> StateError:
        logger.debug(f"DynamoDB {operation} failed for lock table {self.table_name}: {error}")
        return StateError(
            f"Failed to {operation} lock for state '{state_id}' in table {self.table_name}",
            context=ErrorContext(state_id=state_id, operation=operation),
            cause=error_handler.handle_exception(error)
        )
