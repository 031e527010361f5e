"""Tests for the S3 snapshot storage and DynamoDB lock table."""

import io
import json
from datetime import datetime, timedelta

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from landform.state.models import LockToken
from landform.state.s3 import DynamoDBLockTable, S3SnapshotStorage
from landform.utils.errors import StateError


def make_client(service):
    return boto3.client(
        service,
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def s3():
    client = make_client("s3")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def dynamodb():
    client = make_client("dynamodb")
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


class TestS3SnapshotStorage:
    """Test S3SnapshotStorage against a stubbed client."""

    def test_missing_snapshot(self, s3):
        """Test that NoSuchKey reads as no snapshot."""
        client, stubber = s3
        stubber.add_client_error(
            "get_object",
            service_error_code="NoSuchKey",
            http_status_code=404,
            expected_params={"Bucket": "states", "Key": "landform/prod.json"},
        )

        assert S3SnapshotStorage("states", client=client).get("prod") is None

    def test_read_snapshot(self, s3):
        """Test reading and parsing a stored snapshot."""
        client, stubber = s3
        data = json.dumps({"state_id": "prod", "serial": 4}).encode("utf-8")
        stubber.add_response(
            "get_object",
            {"Body": StreamingBody(io.BytesIO(data), len(data))},
            expected_params={"Bucket": "states", "Key": "team/prod.json"},
        )

        storage = S3SnapshotStorage("states", key_prefix="/team/", client=client)

        assert storage.get("prod") == {"state_id": "prod", "serial": 4}
        assert storage.describe("prod") == "s3://states/team/prod.json"

    def test_access_denied(self, s3):
        """Test that other client errors become StateError."""
        client, stubber = s3
        stubber.add_client_error("get_object", service_error_code="AccessDenied", http_status_code=403)

        with pytest.raises(StateError) as exc_info:
            S3SnapshotStorage("states", client=client).get("prod")

        assert "AccessDenied" in str(exc_info.value.cause)

    def test_write_encrypted(self, s3):
        """Test that writes request server-side encryption."""
        client, stubber = s3
        stubber.add_response(
            "put_object",
            {},
            expected_params={
                "Bucket": "states",
                "Key": "landform/prod.json",
                "Body": ANY,
                "ContentType": "application/json",
                "ServerSideEncryption": "AES256",
            },
        )

        S3SnapshotStorage("states", client=client).put("prod", {"state_id": "prod"})

    def test_write_unencrypted(self, s3):
        """Test that encryption can be turned off."""
        client, stubber = s3
        stubber.add_response(
            "put_object",
            {},
            expected_params={
                "Bucket": "states",
                "Key": "landform/prod.json",
                "Body": ANY,
                "ContentType": "application/json",
            },
        )

        S3SnapshotStorage("states", client=client, encrypt=False).put("prod", {"state_id": "prod"})


class TestDynamoDBLockTable:
    """Test DynamoDBLockTable against a stubbed client."""

    def token(self, **kwargs):
        return LockToken.new("prod", ttl=60, **kwargs)

    def test_acquire(self, dynamodb):
        """Test a conditional put that succeeds."""
        client, stubber = dynamodb
        stubber.add_response(
            "put_item",
            {},
            expected_params={
                "TableName": "locks",
                "Item": ANY,
                "ConditionExpression": "attribute_not_exists(LockID) OR Expires < :now",
                "ExpressionAttributeValues": ANY,
            },
        )

        table = DynamoDBLockTable("locks", client=client)

        assert table.try_acquire(self.token(), datetime.utcnow()) is None

    def test_acquire_held(self, dynamodb):
        """Test that a failed condition returns the current holder."""
        client, stubber = dynamodb
        holder = self.token(operation="destroy")
        stubber.add_client_error(
            "put_item", service_error_code="ConditionalCheckFailedException", http_status_code=400
        )
        stubber.add_response(
            "get_item",
            {"Item": {
                "LockID": {"S": "landform/prod"},
                "LockToken": {"S": holder.lock_id},
                "Info": {"S": holder.model_dump_json()},
            }},
            expected_params={
                "TableName": "locks",
                "Key": {"LockID": {"S": "landform/prod"}},
                "ConsistentRead": True,
            },
        )

        table = DynamoDBLockTable("locks", client=client)
        current = table.try_acquire(self.token(), datetime.utcnow())

        assert current.lock_id == holder.lock_id
        assert current.operation == "destroy"

    def test_acquire_error(self, dynamodb):
        """Test that other errors become StateError."""
        client, stubber = dynamodb
        stubber.add_client_error("put_item", service_error_code="ResourceNotFoundException", http_status_code=400)

        with pytest.raises(StateError) as exc_info:
            DynamoDBLockTable("locks", client=client).try_acquire(self.token(), datetime.utcnow())

        assert "locks" in exc_info.value.message

    def test_get_missing(self, dynamodb):
        """Test reading an absent lock record."""
        client, stubber = dynamodb
        stubber.add_response("get_item", {})

        assert DynamoDBLockTable("locks", client=client).get("prod") is None

    def test_renew(self, dynamodb):
        """Test renewing a held lock."""
        client, stubber = dynamodb
        token = self.token()
        stubber.add_response(
            "update_item",
            {},
            expected_params={
                "TableName": "locks",
                "Key": {"LockID": {"S": "landform/prod"}},
                "UpdateExpression": "SET Expires = :expires, Info = :info",
                "ConditionExpression": "LockToken = :lock_id AND Expires > :now",
                "ExpressionAttributeValues": ANY,
            },
        )

        table = DynamoDBLockTable("locks", client=client)
        now = datetime.utcnow()

        assert table.renew(token, now + timedelta(seconds=60), now)

    def test_renew_lost(self, dynamodb):
        """Test that renewing a lost lock returns False."""
        client, stubber = dynamodb
        stubber.add_client_error(
            "update_item", service_error_code="ConditionalCheckFailedException", http_status_code=400
        )

        table = DynamoDBLockTable("locks", client=client)
        now = datetime.utcnow()

        assert not table.renew(self.token(), now + timedelta(seconds=60), now)

    def test_release(self, dynamodb):
        """Test conditional release by lock id."""
        client, stubber = dynamodb
        stubber.add_response(
            "delete_item",
            {},
            expected_params={
                "TableName": "locks",
                "Key": {"LockID": {"S": "landform/prod"}},
                "ConditionExpression": "LockToken = :lock_id",
                "ExpressionAttributeValues": {":lock_id": {"S": "abc"}},
            },
        )
        stubber.add_client_error(
            "delete_item", service_error_code="ConditionalCheckFailedException", http_status_code=400
        )

        table = DynamoDBLockTable("locks", client=client)

        assert table.release("prod", "abc")
        assert not table.release("prod", "abc")
