"""Integration test fixtures: LocalStack S3 and a local Redis."""

from __future__ import annotations

import os
import uuid

import boto3
import pytest
import redis

# Default LocalStack endpoint
LOCALSTACK_URL = os.environ.get("LOCALSTACK_URL", "http://localhost:4566")
REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")


def _localstack_available() -> bool:
    """Check if LocalStack is reachable."""
    try:
        client = boto3.client("s3", region_name="us-east-1", endpoint_url=LOCALSTACK_URL)
        client.list_buckets()
        return True
    except Exception:
        return False


def _redis_available() -> bool:
    try:
        return bool(redis.Redis(host=REDIS_HOST, socket_connect_timeout=1).ping())
    except Exception:
        return False


skip_no_localstack = pytest.mark.skipif(
    not _localstack_available(),
    reason="LocalStack not available",
)

skip_no_redis = pytest.mark.skipif(
    not _redis_available(),
    reason="Redis not available",
)


@pytest.fixture(scope="session")
def localstack_s3():
    """S3 client pointing at LocalStack."""
    return boto3.client("s3", region_name="us-east-1", endpoint_url=LOCALSTACK_URL)


@pytest.fixture
def video_bucket(localstack_s3):
    """A throwaway bucket, emptied and removed after the test."""
    name = f"cadenza-inttest-{uuid.uuid4().hex[:8]}"
    localstack_s3.create_bucket(Bucket=name)
    yield name
    for obj in localstack_s3.list_objects_v2(Bucket=name).get("Contents", []):
        localstack_s3.delete_object(Bucket=name, Key=obj["Key"])
    localstack_s3.delete_bucket(Bucket=name)
