import sys
from pathlib import Path
from typing import Dict, Iterator, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest


class FakePaginator:
    """Walks continuation tokens the way botocore's paginator does."""

    def __init__(self, method) -> None:
        self.method = method

    def paginate(self, **kwargs) -> Iterator[Dict[str, object]]:
        request = dict(kwargs)
        while True:
            response = self.method(**request)
            yield response
            if not response.get("IsTruncated"):
                return
            request["ContinuationToken"] = response["NextContinuationToken"]


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client the pruner uses."""

    def __init__(self, keys: Optional[List[str]] = None, *, page_size: int = 1000) -> None:
        self.keys: List[str] = list(keys or [])
        self.page_size = page_size
        self.list_calls: List[Dict[str, object]] = []
        self.delete_calls: List[List[str]] = []
        self.list_errors: Dict[int, Exception] = {}
        self.delete_errors: Dict[int, Exception] = {}
        self.rejected_keys: Dict[str, str] = {}
        self.put_keys: List[str] = []

    def get_paginator(self, operation: str) -> FakePaginator:
        assert operation == "list_objects_v2"
        return FakePaginator(self.list_objects_v2)

    def list_objects_v2(self, **kwargs) -> Dict[str, object]:
        self.list_calls.append(kwargs)
        call_number = len(self.list_calls)
        if call_number in self.list_errors:
            raise self.list_errors[call_number]

        prefix = str(kwargs.get("Prefix", ""))
        matching = [key for key in self.keys if key.startswith(prefix)]
        start = int(kwargs.get("ContinuationToken", 0) or 0)
        page = matching[start : start + self.page_size]
        response: Dict[str, object] = {
            "Contents": [{"Key": key, "Size": 10, "ETag": '"etag"'} for key in page],
            "IsTruncated": start + self.page_size < len(matching),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    def delete_objects(self, *, Bucket: str, Delete: Dict[str, object]) -> Dict[str, object]:
        batch = [item["Key"] for item in Delete["Objects"]]  # type: ignore[index]
        self.delete_calls.append(batch)
        call_number = len(self.delete_calls)
        if call_number in self.delete_errors:
            raise self.delete_errors[call_number]

        deleted = []
        errors = []
        for key in batch:
            if key in self.rejected_keys:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": self.rejected_keys[key]})
            else:
                deleted.append({"Key": key})
                self.keys.remove(key)
        response: Dict[str, object] = {"Deleted": deleted}
        if errors:
            response["Errors"] = errors
        return response

    def generate_presigned_url(self, operation: str, Params: Dict[str, str], ExpiresIn: int) -> str:
        return f"https://example.test/{Params['Bucket']}/{Params['Key']}?op={operation}&expires={ExpiresIn}"

    def put_object(self, *, Bucket: str, Key: str, Body: bytes) -> None:
        self.put_keys.append(Key)
        self.keys.append(Key)


@pytest.fixture
def fake_s3():
    return FakeS3Client
