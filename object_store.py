"""
object_store.py - S3 / MinIO access for the storage tools

Thin wrapper over a boto3 S3 client bound to one bucket:
- get / put / copy / delete / exists on single keys
- list(prefix, delimiter) flattened across list_objects_v2 pages
- head_bucket() as the startup connectivity check

botocore errors are translated into storage_errors types so callers never
handle ClientError directly.
"""

from dataclasses import dataclass
from typing import Iterator

import boto3
import click
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storage_errors import ConnectivityError, ObjectNotFound, TransportError
from pairing import ObjectEntry

DEFAULT_ENDPOINT = "http://127.0.0.1:9000"
DEFAULT_ACCESS_KEY = "minioadmin"
DEFAULT_SECRET_KEY = "minioadmin"
DEFAULT_BUCKET = "shadow-collector"
DEFAULT_REGION = "us-east-1"

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class StoreConfig:
    """Connection settings for the object store."""

    endpoint: str = DEFAULT_ENDPOINT
    access_key: str = DEFAULT_ACCESS_KEY
    secret_key: str = DEFAULT_SECRET_KEY
    bucket: str = DEFAULT_BUCKET
    region: str = DEFAULT_REGION


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _translate(error: Exception, action: str, key: str) -> Exception:
    """Map a botocore failure to ObjectNotFound / TransportError."""
    if isinstance(error, ClientError) and _error_code(error) in NOT_FOUND_CODES:
        return ObjectNotFound(f"{action} {key}: not found", key=key)
    return TransportError(f"{action} {key}: {error}", key=key)


class S3ObjectStore:
    """Object store operations against a single bucket."""

    def __init__(self, client, bucket: str, endpoint: str = ""):
        self.client = client
        self.bucket = bucket
        self.endpoint = endpoint

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "get", key) from e

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "put", key) from e

    def copy(self, src_key: str, dst_key: str) -> None:
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=dst_key,
                CopySource={"Bucket": self.bucket, "Key": src_key},
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "copy", src_key) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "delete", key) from e

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise _translate(e, "head", key) from e
        except BotoCoreError as e:
            raise _translate(e, "head", key) from e

    def list(self, prefix: str, delimiter: str | None = None) -> Iterator[ObjectEntry]:
        """
        Yield every object under prefix. With a delimiter, only objects
        directly under prefix are returned (common prefixes are skipped).
        """
        params = {"Bucket": self.bucket, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = delimiter

        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(**params):
                for obj in page.get("Contents", []):
                    last_modified = obj.get("LastModified")
                    yield ObjectEntry(
                        key=obj["Key"],
                        size=obj.get("Size"),
                        last_modified=last_modified.isoformat() if last_modified else None,
                    )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "list", prefix) from e

    def head_bucket(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise ConnectivityError(
                f"Object store unreachable ({self.endpoint}, bucket {self.bucket}): {e}"
            ) from e


def connect(config: StoreConfig) -> S3ObjectStore:
    """Build a store for config. Path-style addressing is required by MinIO."""
    client = boto3.client(
        "s3",
        endpoint_url=config.endpoint,
        region_name=config.region,
        aws_access_key_id=config.access_key,
        aws_secret_access_key=config.secret_key,
        config=Config(s3={"addressing_style": "path"}),
    )
    return S3ObjectStore(client, config.bucket, endpoint=config.endpoint)


def store_options(func):
    """Shared click options for object store settings (env overridable)."""
    options = [
        click.option("--endpoint", envvar="MINIO_ENDPOINT", default=DEFAULT_ENDPOINT,
                     show_default=True, help="Object store endpoint URL"),
        click.option("--access-key", envvar="MINIO_ACCESS_KEY", default=DEFAULT_ACCESS_KEY,
                     help="Object store access key"),
        click.option("--secret-key", envvar="MINIO_SECRET_KEY", default=DEFAULT_SECRET_KEY,
                     help="Object store secret key"),
        click.option("--bucket", envvar="MINIO_BUCKET", default=DEFAULT_BUCKET,
                     show_default=True, help="Bucket name"),
        click.option("--region", envvar="MINIO_REGION", default=DEFAULT_REGION,
                     show_default=True, help="Bucket region"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def config_from_options(endpoint: str, access_key: str, secret_key: str,
                        bucket: str, region: str) -> StoreConfig:
    return StoreConfig(
        endpoint=endpoint,
        access_key=access_key,
        secret_key=secret_key,
        bucket=bucket,
        region=region,
    )
