"""S3-compatible object store access for chunked transfers.

The drive's object store speaks the S3 API plus one extension: a callback
descriptor sent in ``x-oss-callback``/``x-oss-callback-var`` headers on the
final request (single PUT or multipart completion). The store then calls the
drive and returns the drive's JSON answer as the response body. boto3 knows
nothing about either side, so three event hooks bridge it:

- ``provide-client-params``: move ``Callback``/``CallbackVar`` out of the
  API params into the request context, before parameter validation.
- ``before-sign``: copy them into request headers so they are signed.
- ``before-parse``: capture a JSON body as ``CallbackResult`` and hand the
  XML parser an empty body instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

import boto3
import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from driveupload.credentials import BrokerCredentialProvider, CredentialBroker
from driveupload.errors import (
    APIError,
    CredentialExpiredError,
    PartAlreadyExistsError,
    TransientError,
    UploadError,
)

logger = logging.getLogger(__name__)

__all__ = ["ObjectStore", "S3ObjectStore", "translate_client_error", "HEADER_PARAMS"]

CALLBACK_CONTEXT_KEY = "drive_callback"
CALLBACK_OPERATIONS = ("PutObject", "CompleteMultipartUpload")

# Credential errors that no retry will fix
FATAL_ERROR_CODES = {"InvalidAccessKeyId", "SecurityTokenExpired"}
THROTTLE_ERROR_CODES = {"SlowDown", "RequestLimitExceeded", "RequestTimeout", "InternalError"}

# Forwardable header -> boto3 parameter
HEADER_PARAMS = {
    "cache-control": "CacheControl",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "content-type": "ContentType",
}


class ObjectStore(Protocol):
    """Operations the transfer engine needs from an object store."""

    def put_object(
        self,
        bucket: str,
        key: str,
        body: Any,
        *,
        content_length: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        callback: str = "",
        callback_var: str = "",
    ) -> bytes: ...

    def create_multipart_upload(
        self, bucket: str, key: str, *, headers: Optional[Mapping[str, str]] = None
    ) -> str: ...

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes) -> str: ...

    def list_parts(self, bucket: str, key: str, upload_id: str) -> Dict[int, str]: ...

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
        *,
        callback: str = "",
        callback_var: str = "",
    ) -> bytes: ...

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None: ...


def translate_client_error(
    exc: BaseException, operation: str, *, part_number: Optional[int] = None
) -> UploadError:
    """Map a boto3/botocore failure onto the engine's error hierarchy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        details = {"code": code, "status_code": status, "operation": operation}
        if code == "PartAlreadyExist" and part_number is not None:
            return PartAlreadyExistsError(part_number, details=details, cause=exc)
        if code in FATAL_ERROR_CODES:
            return CredentialExpiredError(
                f"{operation} rejected credentials: {code}",
                details=details,
                suggestion="Refresh the object-storage token and retry the upload",
                cause=exc,
            )
        if status == 429 or status >= 500 or code in THROTTLE_ERROR_CODES or status == 0:
            return TransientError(f"{operation} failed: {code or status}", details=details, cause=exc)
        return APIError(f"{operation} failed: {code}", status_code=status, details=details, cause=exc)
    if isinstance(exc, BotoCoreError):
        return TransientError(f"{operation} failed: {exc}", cause=exc)
    return UploadError(f"{operation} failed: {exc}", cause=exc)


def _stash_callback(params: Dict[str, Any], context: Dict[str, Any], **kwargs: Any) -> None:
    callback = params.pop("Callback", None)
    callback_var = params.pop("CallbackVar", None)
    if callback:
        context[CALLBACK_CONTEXT_KEY] = (callback, callback_var or "")


def _add_callback_headers(request: Any, **kwargs: Any) -> None:
    stashed = request.context.get(CALLBACK_CONTEXT_KEY)
    if not stashed:
        return
    callback, callback_var = stashed
    request.headers["x-oss-callback"] = callback
    if callback_var:
        request.headers["x-oss-callback-var"] = callback_var


def _capture_callback_body(
    response_dict: Dict[str, Any],
    customized_response_dict: Dict[str, Any],
    **kwargs: Any,
) -> None:
    body = response_dict.get("body") or b""
    if not body.lstrip().startswith(b"{"):
        return
    customized_response_dict["CallbackResult"] = body
    response_dict["body"] = b""
    # botocore flags a non-XML 200 body as a server error; a callback answer is not one.
    if response_dict.get("status_code") == 500:
        response_dict["status_code"] = 200


def register_callback_hooks(client: Any) -> None:
    events = client.meta.events
    for operation in CALLBACK_OPERATIONS:
        events.register(f"provide-client-params.s3.{operation}", _stash_callback)
        events.register(f"before-sign.s3.{operation}", _add_callback_headers)
        events.register(f"before-parse.s3.{operation}", _capture_callback_body)


def header_params(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for name, value in (headers or {}).items():
        param = HEADER_PARAMS.get(name.lower())
        if param and value:
            params[param] = value
    return params


class S3ObjectStore:
    """boto3-backed ``ObjectStore``.

    Example:
        store = S3ObjectStore.from_broker(broker, endpoint_url="https://oss-cn-shenzhen.aliyuncs.com")
        etag = store.upload_part(bucket, key, upload_id, 1, chunk)
    """

    def __init__(self, client: Any) -> None:
        self.client = client
        register_callback_hooks(client)

    @classmethod
    def from_broker(
        cls,
        broker: CredentialBroker,
        *,
        endpoint_url: str,
        region: str,
        max_pool_connections: int = 32,
    ) -> "S3ObjectStore":
        """Build a client whose credentials come from ``broker`` and refresh through it."""
        bc_session = botocore.session.get_session()
        resolver = bc_session.get_component("credential_provider")
        resolver.insert_before("env", BrokerCredentialProvider(broker))
        session = boto3.Session(botocore_session=bc_session, region_name=region)
        client = session.client(
            "s3",
            endpoint_url=endpoint_url,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": "virtual"},
                retries={"max_attempts": 1, "mode": "standard"},
                max_pool_connections=max_pool_connections,
                request_checksum_calculation="when_required",
                response_checksum_validation="when_required",
            ),
        )
        logger.debug("Created object-store client for %s", endpoint_url)
        return cls(client)

    def put_object(
        self,
        bucket: str,
        key: str,
        body: Any,
        *,
        content_length: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        callback: str = "",
        callback_var: str = "",
    ) -> bytes:
        params: Dict[str, Any] = {"Bucket": bucket, "Key": key, "Body": body, **header_params(headers)}
        if content_length is not None:
            params["ContentLength"] = content_length
        if callback:
            params["Callback"] = callback
            params["CallbackVar"] = callback_var
        try:
            response = self.client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "PutObject") from exc
        return response.get("CallbackResult", b"")

    def create_multipart_upload(
        self, bucket: str, key: str, *, headers: Optional[Mapping[str, str]] = None
    ) -> str:
        try:
            response = self.client.create_multipart_upload(
                Bucket=bucket, Key=key, **header_params(headers)
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "CreateMultipartUpload") from exc
        return response["UploadId"]

    def upload_part(self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        try:
            response = self.client.upload_part(
                Bucket=bucket, Key=key, UploadId=upload_id, PartNumber=part_number, Body=body
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "UploadPart", part_number=part_number) from exc
        return response["ETag"]

    def list_parts(self, bucket: str, key: str, upload_id: str) -> Dict[int, str]:
        parts: Dict[int, str] = {}
        kwargs: Dict[str, Any] = {"Bucket": bucket, "Key": key, "UploadId": upload_id}
        try:
            while True:
                response = self.client.list_parts(**kwargs)
                for part in response.get("Parts", []):
                    parts[int(part["PartNumber"])] = part["ETag"]
                if not response.get("IsTruncated"):
                    break
                kwargs["PartNumberMarker"] = response["NextPartNumberMarker"]
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "ListParts") from exc
        return parts

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
        *,
        callback: str = "",
        callback_var: str = "",
    ) -> bytes:
        params: Dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "UploadId": upload_id,
            "MultipartUpload": {"Parts": parts},
        }
        if callback:
            params["Callback"] = callback
            params["CallbackVar"] = callback_var
        try:
            response = self.client.complete_multipart_upload(**params)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "CompleteMultipartUpload") from exc
        return response.get("CallbackResult", b"")

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, "AbortMultipartUpload") from exc
