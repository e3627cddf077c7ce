"""Tests for the S3-compatible object store with moto mocking."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from driveupload import constants as c
from driveupload.credentials import CredentialBroker
from driveupload.errors import (
    APIError,
    CredentialExpiredError,
    PartAlreadyExistsError,
    TransientError,
)
from driveupload.objectstore import (
    CALLBACK_CONTEXT_KEY,
    S3ObjectStore,
    _add_callback_headers,
    _capture_callback_body,
    _stash_callback,
    header_params,
    translate_client_error,
)

BUCKET = "fhnfile"


def _client_error(code: str, status: int, operation: str = "UploadPart") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@pytest.fixture
def store(aws_credentials):
    """An S3ObjectStore over a mocked bucket."""
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield S3ObjectStore(client)


class TestTranslateClientError:
    """Tests for mapping boto3 failures."""

    def test_part_already_exists(self) -> None:
        error = translate_client_error(_client_error("PartAlreadyExist", 409), "UploadPart", part_number=3)
        assert isinstance(error, PartAlreadyExistsError)
        assert error.part_number == 3

    @pytest.mark.parametrize("code", ["InvalidAccessKeyId", "SecurityTokenExpired"])
    def test_credential_errors_are_fatal(self, code: str) -> None:
        error = translate_client_error(_client_error(code, 403), "PutObject")
        assert isinstance(error, CredentialExpiredError)
        assert not error.retryable

    @pytest.mark.parametrize("code,status", [("SlowDown", 503), ("InternalError", 500), ("TooMany", 429)])
    def test_throttling_is_transient(self, code: str, status: int) -> None:
        assert isinstance(translate_client_error(_client_error(code, status), "PutObject"), TransientError)

    def test_other_client_errors_are_permanent(self) -> None:
        error = translate_client_error(_client_error("AccessDenied", 403), "PutObject")
        assert isinstance(error, APIError)
        assert error.status_code == 403
        assert not error.retryable

    def test_botocore_errors_are_transient(self) -> None:
        error = translate_client_error(EndpointConnectionError(endpoint_url="https://x"), "UploadPart")
        assert error.retryable


class TestCallbackHooks:
    """The hooks that carry the callback descriptor through boto3."""

    def test_stash_moves_params_into_context(self) -> None:
        params: Dict[str, Any] = {"Bucket": "b", "Key": "k", "Callback": "Y2I=", "CallbackVar": "dg=="}
        context: Dict[str, Any] = {}
        _stash_callback(params=params, context=context)
        assert "Callback" not in params
        assert "CallbackVar" not in params
        assert context[CALLBACK_CONTEXT_KEY] == ("Y2I=", "dg==")

    def test_headers_added_before_signing(self) -> None:
        request = SimpleNamespace(context={CALLBACK_CONTEXT_KEY: ("Y2I=", "dg==")}, headers={})
        _add_callback_headers(request=request)
        assert request.headers == {"x-oss-callback": "Y2I=", "x-oss-callback-var": "dg=="}

    def test_no_callback_no_headers(self) -> None:
        request = SimpleNamespace(context={}, headers={})
        _add_callback_headers(request=request)
        assert request.headers == {}

    def test_json_body_captured(self) -> None:
        response_dict = {"body": b'{"state": true}', "status_code": 200, "headers": {}}
        customized: Dict[str, Any] = {}
        _capture_callback_body(response_dict=response_dict, customized_response_dict=customized)
        assert customized["CallbackResult"] == b'{"state": true}'
        assert response_dict["body"] == b""

    def test_xml_body_left_alone(self) -> None:
        response_dict = {"body": b"<CompleteMultipartUploadResult/>", "status_code": 200}
        customized: Dict[str, Any] = {}
        _capture_callback_body(response_dict=response_dict, customized_response_dict=customized)
        assert customized == {}

    def test_header_params(self) -> None:
        assert header_params({"Content-Type": "text/plain", "X-Other": "1", "Cache-Control": ""}) == {
            "ContentType": "text/plain"
        }


class TestS3ObjectStore:
    """Tests for S3ObjectStore against moto."""

    def test_put_object(self, store: S3ObjectStore) -> None:
        result = store.put_object(
            BUCKET,
            "a/b.bin",
            b"hello world",
            headers={"content-type": "text/plain"},
            callback="Y2I=",
            callback_var="dg==",
        )
        assert result == b""
        obj = store.client.get_object(Bucket=BUCKET, Key="a/b.bin")
        assert obj["Body"].read() == b"hello world"
        assert obj["ContentType"] == "text/plain"

    def test_put_object_streams_file(self, store: S3ObjectStore, tmp_path) -> None:
        path = tmp_path / "payload.bin"
        path.write_bytes(b"x" * 4096)
        with open(path, "rb") as handle:
            store.put_object(BUCKET, "stream.bin", handle, content_length=4096)
        head = store.client.head_object(Bucket=BUCKET, Key="stream.bin")
        assert head["ContentLength"] == 4096

    def test_multipart_round(self, store: S3ObjectStore) -> None:
        upload_id = store.create_multipart_upload(BUCKET, "big.bin")
        first = b"a" * (5 * c.MiB)
        etag1 = store.upload_part(BUCKET, "big.bin", upload_id, 1, first)
        etag2 = store.upload_part(BUCKET, "big.bin", upload_id, 2, b"tail")
        assert store.list_parts(BUCKET, "big.bin", upload_id) == {1: etag1, 2: etag2}

        store.complete_multipart_upload(
            BUCKET,
            "big.bin",
            upload_id,
            [{"PartNumber": 1, "ETag": etag1}, {"PartNumber": 2, "ETag": etag2}],
            callback="Y2I=",
        )
        head = store.client.head_object(Bucket=BUCKET, Key="big.bin")
        assert head["ContentLength"] == len(first) + 4

    def test_abort(self, store: S3ObjectStore) -> None:
        upload_id = store.create_multipart_upload(BUCKET, "gone.bin")
        store.abort_multipart_upload(BUCKET, "gone.bin", upload_id)
        with pytest.raises(APIError):
            store.list_parts(BUCKET, "gone.bin", upload_id)

    def test_missing_bucket(self, store: S3ObjectStore) -> None:
        with pytest.raises(APIError):
            store.put_object("no-such-bucket", "k", b"x")

    def test_from_broker_uses_broker_credentials(self, aws_credentials) -> None:
        calls = []

        def fetch() -> Dict[str, Any]:
            calls.append(1)
            return {
                "StatusCode": "200",
                "AccessKeyId": "BROKERKEY",
                "AccessKeySecret": "secret",
                "SecurityToken": "sts",
                "Expiration": "2099-01-01T00:00:00Z",
            }

        with mock_aws():
            store = S3ObjectStore.from_broker(
                CredentialBroker(fetch),
                endpoint_url=c.DEFAULT_OSS_ENDPOINT,
                region=c.DEFAULT_OSS_REGION,
            )
            assert store.client.meta.endpoint_url == c.DEFAULT_OSS_ENDPOINT
            assert calls == [1]
