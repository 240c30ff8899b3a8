"""
S3-compatible object store access for the backup pruner.

Listing walks every page of the ``list_objects_v2`` paginator, deletion is
submitted in bounded batches and partial failures are reported rather than
raised.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence


MAX_DELETE_BATCH = 1000
DEFAULT_PRESIGN_EXPIRY = 3600
NOISY_LOGGERS = ("boto", "boto3", "botocore", "urllib3", "s3transfer")

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the object store cannot complete a request."""


class ListingError(StoreError):
    """Raised when a bucket inventory could not be listed completely."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    storage_class: Optional[str] = None


@dataclass(frozen=True)
class DeletionFailure:
    key: str
    error: str
    code: Optional[str] = None


@dataclass
class DeletionResult:
    successful: List[str] = field(default_factory=list)
    failed: List[DeletionFailure] = field(default_factory=list)


def quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_s3_client(
    *,
    aws_profile: Optional[str] = None,
    aws_region: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    force_path_style: bool = False,
):
    try:
        import boto3
        from botocore.config import Config
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for S3 operations. Install with `pip install boto3`."
        ) from exc
    quiet_external_loggers()

    session_kwargs = {}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    if access_key_id and secret_access_key:
        session_kwargs["aws_access_key_id"] = access_key_id
        session_kwargs["aws_secret_access_key"] = secret_access_key
    session = boto3.Session(**session_kwargs)

    client_kwargs: Dict[str, Any] = {}
    if endpoint_url:
        client_kwargs["endpoint_url"] = endpoint_url
    if force_path_style:
        client_kwargs["config"] = Config(s3={"addressing_style": "path"})
    return session.client("s3", **client_kwargs)


def list_objects(client, bucket: str, prefix: str = "") -> List[StoredObject]:
    """Return the complete inventory of ``bucket`` under ``prefix``.

    Raises ListingError if any page fails; a partial inventory is never
    returned.
    """
    from botocore.exceptions import BotoCoreError, ClientError

    paginator = client.get_paginator("list_objects_v2")
    objects: List[StoredObject] = []
    pages = 0

    try:
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            pages += 1
            for item in page.get("Contents", []):
                objects.append(
                    StoredObject(
                        key=item["Key"],
                        size=item.get("Size", 0),
                        last_modified=item.get("LastModified"),
                        etag=item.get("ETag"),
                        storage_class=item.get("StorageClass"),
                    )
                )
    except (BotoCoreError, ClientError) as error:
        raise ListingError(
            f"Failed to list page {pages + 1} of s3://{bucket}/{prefix}: {error}"
        ) from error

    logger.debug("Listed %d object(s) in %d page(s) from s3://%s/%s", len(objects), pages, bucket, prefix)
    return objects


def _batches(keys: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


def delete_keys(
    client, bucket: str, keys: Iterable[str], *, batch_size: int = MAX_DELETE_BATCH
) -> DeletionResult:
    from botocore.exceptions import BotoCoreError, ClientError

    if batch_size <= 0 or batch_size > MAX_DELETE_BATCH:
        raise ValueError(f"batch_size must be between 1 and {MAX_DELETE_BATCH}.")

    keys_list = list(keys)
    result = DeletionResult()

    for number, batch in enumerate(_batches(keys_list, batch_size), start=1):
        try:
            response = client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": False},
            )
        except (BotoCoreError, ClientError) as error:
            logger.error(
                "Batch %d of %d key(s) failed in bucket %s: %s", number, len(batch), bucket, error
            )
            result.failed.extend(DeletionFailure(key=key, error=str(error)) for key in batch)
            continue

        result.successful.extend(item["Key"] for item in response.get("Deleted", []))
        for item in response.get("Errors", []):
            result.failed.append(
                DeletionFailure(
                    key=item.get("Key", ""),
                    error=item.get("Message", "unknown error"),
                    code=item.get("Code"),
                )
            )

    return result


def presign_url(
    client, bucket: str, key: str, expires_in: int = DEFAULT_PRESIGN_EXPIRY
) -> str:
    if expires_in <= 0:
        raise ValueError("expires_in must be a positive number of seconds.")
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": bucket, "Key": key},
        ExpiresIn=expires_in,
    )


def inventory_cache_path(cache_dir: Path, bucket: str) -> Path:
    return cache_dir / f"{bucket}.list.json"


def write_inventory_cache(cache_dir: Path, bucket: str, objects: Iterable[StoredObject]) -> Path:
    cache_dir.mkdir(parents=True, exist_ok=True)
    records = []
    for obj in objects:
        record = asdict(obj)
        if obj.last_modified is not None:
            record["last_modified"] = obj.last_modified.isoformat()
        records.append(record)
    path = inventory_cache_path(cache_dir, bucket)
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


def read_inventory_cache(cache_dir: Path, bucket: str) -> Optional[List[StoredObject]]:
    """Load a snapshot written by write_inventory_cache, or None if there is none.

    An unreadable snapshot raises ListingError so the bucket fails on its own.
    """
    path = inventory_cache_path(cache_dir, bucket)
    if not path.is_file():
        return None
    objects: List[StoredObject] = []
    try:
        records = json.loads(path.read_text(encoding="utf-8"))
        for record in records:
            last_modified = record.get("last_modified")
            objects.append(
                StoredObject(
                    key=record["key"],
                    size=record.get("size", 0),
                    last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
                    etag=record.get("etag"),
                    storage_class=record.get("storage_class"),
                )
            )
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as error:
        raise ListingError(f"Inventory snapshot {path} is unreadable: {error}") from error
    return objects
