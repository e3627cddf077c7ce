"""HTTP client for the drive endpoints the upload engine needs.

Every call goes through a pacer and maps transport failures onto the engine's
error hierarchy: connection problems, timeouts, 429 and 5xx become
``TransientError``; other HTTP errors become ``APIError``. Calls that are safe
to repeat are retried here; negotiation and form uploads are single attempts
and the caller owns their retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Tuple

import requests
from requests_toolbelt import MultipartEncoder

from driveupload import constants as c
from driveupload.cipher import EcdhChannel
from driveupload.config import ClientSettings
from driveupload.context import CancelToken
from driveupload.errors import (
    APIError,
    PayloadDecodeError,
    ProtocolError,
    TransientError,
)
from driveupload.models import (
    CallbackData,
    DownloadURL,
    FileEntry,
    SampleInitInfo,
    UploadBasicInfo,
    UploadInitInfo,
    parse_callback_result,
)
from driveupload.rate_limiter import Pacer, Pacers
from driveupload.resilience import RetryPolicy, retry_call
from driveupload.signing import make_target

logger = logging.getLogger(__name__)

__all__ = ["DriveClient", "RETRYABLE_STATUS_CODES"]

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class _SizedReader:
    """Stream wrapper reporting its remaining length to the multipart encoder.

    Reads are capped at one chunk so a cancelled upload stops between chunks.
    """

    def __init__(self, stream: BinaryIO, size: int, cancel: Optional[CancelToken] = None) -> None:
        self._stream = stream
        self._size = size
        self._read = 0
        self._cancel = cancel

    @property
    def len(self) -> int:
        return max(0, self._size - self._read)

    def read(self, amount: int = -1) -> bytes:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
        remaining = self.len
        if remaining == 0:
            return b""
        if amount is None or amount < 0 or amount > remaining:
            amount = remaining
        chunk = self._stream.read(min(amount, c.HASH_READ_SIZE))
        self._read += len(chunk)
        if not chunk:
            raise ProtocolError(
                f"source ended after {self._read} of {self._size} bytes",
                details={"expected": self._size, "read": self._read},
            )
        return chunk


class DriveClient:
    """Thin, paced client over a ``requests.Session``.

    Example:
        client = DriveClient(ClientSettings(cookie="UID=...; CID=...; SEID=..."))
        identity = client.get_upload_basic_info()
        entries = client.list_files("0")
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        session: Optional[requests.Session] = None,
        pacers: Optional[Pacers] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": settings.user_agent})
        if settings.cookie:
            self.session.headers["Cookie"] = settings.cookie
        self.pacers = pacers or Pacers.create(
            api_min_sleep=settings.api_min_sleep,
            download_min_sleep=settings.download_min_sleep,
            upload_min_sleep=settings.upload_min_sleep,
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.channel = EcdhChannel()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        pacer: Optional[Pacer] = None,
        **kwargs: Any,
    ) -> requests.Response:
        (pacer or self.pacers.api).acquire()
        kwargs.setdefault("timeout", self.settings.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientError(f"{method} {url} failed", cause=exc) from exc
        except requests.RequestException as exc:
            raise APIError(f"{method} {url} failed", cause=exc) from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientError(
                f"{method} {url} returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise APIError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError(f"non-JSON response from {response.url}", cause=exc) from exc
        if not isinstance(payload, dict):
            raise ProtocolError(f"unexpected JSON shape from {response.url}")
        return payload

    def _call_json(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        cancel: Optional[CancelToken] = None,
        pacer: Optional[Pacer] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        return retry_call(
            lambda: self._json(self._request(method, url, pacer=pacer, **kwargs)),
            self.retry_policy,
            operation_name=operation,
            cancel=cancel,
        )

    def _open_api_headers(self) -> Dict[str, str]:
        if self.settings.access_token:
            return {"Authorization": f"Bearer {self.settings.access_token}"}
        return {}

    def _api_url(self, path: str) -> str:
        return self.settings.api_base_url.rstrip("/") + path

    @staticmethod
    def _check_open_api(payload: Mapping[str, Any], operation: str) -> None:
        if payload.get("state") is False:
            raise APIError(
                f"{operation} failed: {payload.get('message') or payload.get('error') or 'unknown error'}",
                errno=payload.get("code") or payload.get("errno"),
            )

    # ------------------------------------------------------------------
    # Upload endpoints
    # ------------------------------------------------------------------

    def get_upload_basic_info(self, cancel: Optional[CancelToken] = None) -> UploadBasicInfo:
        """Fetch the uploader identity (user id and signing key)."""
        payload = self._call_json("GET", c.UPLOAD_INFO_URL, operation="upload info", cancel=cancel)
        return UploadBasicInfo.from_response(payload)

    def init_upload(self, form: Mapping[str, str]) -> UploadInitInfo:
        """One negotiation round over the encrypted channel. Not retried.

        Raises:
            PayloadDecodeError: the response could not be decoded
            APIError: the server reported an error status
        """
        request = self.channel.seal(form)
        request["headers"] = {
            "Content-Type": "application/x-www-form-urlencoded",
            **(request.get("headers") or {}),
        }
        response = self._request("POST", c.INIT_UPLOAD_URL, **request)
        decrypted = self.channel.open(response.content)
        try:
            payload = json.loads(decrypted)
        except ValueError as exc:
            raise PayloadDecodeError("negotiation response is not valid JSON", cause=exc) from exc
        if not isinstance(payload, dict):
            raise PayloadDecodeError("negotiation response is not a JSON object")

        info = UploadInitInfo.from_response(payload)
        if info.status_code not in c.OK_STATUS_CODES:
            raise APIError(
                f"negotiation rejected: {info.status_msg or 'unknown error'}",
                errno=info.status_code,
            )
        return info

    def sample_init_upload(
        self,
        *,
        user_id: str,
        file_name: str,
        file_size: int,
        dir_id: str,
        cancel: Optional[CancelToken] = None,
    ) -> SampleInitInfo:
        payload = self._call_json(
            "POST",
            c.SAMPLE_INIT_UPLOAD_URL,
            operation="sample init",
            cancel=cancel,
            data={
                "userid": user_id,
                "filename": file_name,
                "filesize": str(file_size),
                "target": make_target(dir_id),
            },
        )
        return SampleInitInfo.from_response(payload)

    def sample_upload(
        self,
        init: SampleInitInfo,
        stream: BinaryIO,
        *,
        file_name: str,
        file_size: int,
        headers: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> CallbackData:
        """Send the object as a multipart form. Not retried: the stream is consumed."""
        fields: List[Tuple[str, Any]] = [
            ("name", file_name),
            ("key", init.object_key),
            ("policy", init.policy),
            ("OSSAccessKeyId", init.access_id),
            ("success_action_status", "200"),
            ("callback", init.callback),
            ("signature", init.signature),
        ]
        for key, value in (headers or {}).items():
            fields.append((key, value))
        fields.append(("file", (file_name, _SizedReader(stream, file_size, cancel), "application/octet-stream")))

        encoder = MultipartEncoder(fields=fields)
        response = self._request(
            "POST",
            init.host,
            pacer=self.pacers.upload,
            data=encoder,
            headers={"Content-Type": encoder.content_type},
        )
        return parse_callback_result(response.content)

    def get_oss_token(self, cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        """Raw object-storage credential payload."""
        return self._call_json("GET", c.OSS_TOKEN_URL, operation="oss token", cancel=cancel)

    # ------------------------------------------------------------------
    # Metadata endpoints
    # ------------------------------------------------------------------

    def list_files(
        self,
        dir_id: str,
        *,
        limit: int = c.DEFAULT_LIST_CHUNK,
        cancel: Optional[CancelToken] = None,
    ) -> List[FileEntry]:
        """List every entry of a directory, following pagination."""
        entries: List[FileEntry] = []
        offset = 0
        while True:
            payload = self._call_json(
                "GET",
                self._api_url(c.FILE_LIST_PATH),
                operation="list files",
                cancel=cancel,
                headers=self._open_api_headers(),
                params={
                    "cid": dir_id,
                    "limit": limit,
                    "offset": offset,
                    "show_dir": 1,
                    "o": "user_utime",
                    "asc": 0,
                },
            )
            self._check_open_api(payload, "list files")
            page = payload.get("data") or []
            entries.extend(FileEntry.from_response(item) for item in page)
            offset += len(page)
            total = int(payload.get("count") or 0)
            if not page or offset >= total:
                break
        logger.debug("Listed %d entries in directory %s", len(entries), dir_id)
        return entries

    def get_info(self, file_id: str, cancel: Optional[CancelToken] = None) -> Optional[FileEntry]:
        """Metadata for a file or directory id, or None if it does not exist."""
        payload = self._call_json(
            "GET",
            self._api_url(c.FILE_INFO_PATH),
            operation="file info",
            cancel=cancel,
            headers=self._open_api_headers(),
            params={"file_id": file_id},
        )
        data = payload.get("data")
        if payload.get("state") is False or not isinstance(data, dict) or not data:
            return None
        data = dict(data)
        if "size_byte" in data:
            data["size"] = data["size_byte"]
        return FileEntry.from_response(data)

    def get_download_url(
        self, pick_code: str, cancel: Optional[CancelToken] = None
    ) -> Tuple[FileEntry, DownloadURL]:
        """Resolve a pick code to its metadata and a signed download URL."""
        payload = self._call_json(
            "POST",
            self._api_url(c.DOWNLOAD_URL_PATH),
            operation="download url",
            cancel=cancel,
            pacer=self.pacers.download,
            headers=self._open_api_headers(),
            data={"pick_code": pick_code},
        )
        self._check_open_api(payload, "download url")
        data = payload.get("data")
        if not isinstance(data, dict) or not data:
            raise APIError(f"no download info for pick code {pick_code}")
        file_id, info = next(iter(data.items()))
        entry = FileEntry.from_response({**info, "file_id": info.get("file_id") or file_id})
        return entry, DownloadURL.from_response(info.get("url"))
