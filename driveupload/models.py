"""Wire models for drive API responses.

The service answers the same call in more than one shape: fields nested under
``data`` or at the top level, callbacks as an object, a two-element array or a
bare string, and short or long field names in listings. Each ``from_response``
decodes the variants in a fixed priority order so callers only see one shape.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qs, urlparse

from driveupload import constants as c
from driveupload.errors import APIError, ProtocolError

__all__ = [
    "UploadBasicInfo",
    "UploadInitInfo",
    "SampleInitInfo",
    "CallbackData",
    "FileEntry",
    "DownloadURL",
    "encode_callback",
    "decode_callback",
    "parse_callback_result",
]


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def _as_int(value: Any, default: int = 0) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _is_base64(text: str) -> bool:
    if not text:
        return False
    try:
        base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def encode_callback(text: str) -> str:
    """Base64-encode a callback descriptor unless it already is base64."""
    if not text or _is_base64(text):
        return text
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_callback(raw: Any) -> Tuple[str, str]:
    """Split a callback field into (callback, callback_var).

    Tried in order: an object with ``callback``/``callback_var``, an array
    ``[callback, callback_var]``, then a bare string.
    """
    if isinstance(raw, Mapping):
        callback = raw.get("callback") or ""
        callback_var = raw.get("callback_var") or ""
        if callback:
            return str(callback), str(callback_var)
        return json.dumps(raw, separators=(",", ":")), str(callback_var)
    if isinstance(raw, (list, tuple)) and raw:
        return str(raw[0]), str(raw[1]) if len(raw) > 1 else ""
    if isinstance(raw, str):
        return raw, ""
    return "", ""


def _check_state(payload: Mapping[str, Any], what: str) -> None:
    state = payload.get("state")
    if state is False or state == 0:
        raise APIError(
            f"{what} failed: {_first(payload, 'error', 'message', 'msg', default='unknown error')}",
            errno=_as_int(_first(payload, "errno", "code"), default=0) or None,
        )


@dataclass(frozen=True)
class UploadBasicInfo:
    """The uploader identity used to sign negotiation requests."""

    user_id: str
    user_key: str

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "UploadBasicInfo":
        _check_state(payload, "upload info")
        user_id = str(_first(payload, "user_id", "userid", default=""))
        user_key = str(_first(payload, "userkey", "user_key", default=""))
        if not user_id or not user_key:
            raise ProtocolError("upload info response is missing user_id or userkey")
        return cls(user_id=user_id, user_key=user_key)


@dataclass(frozen=True)
class UploadInitInfo:
    """Decoded negotiation response."""

    status: int
    pick_code: str = ""
    file_id: str = ""
    target: str = ""
    bucket: str = ""
    object_key: str = ""
    callback: str = ""
    callback_var: str = ""
    sign_key: str = ""
    sign_check: str = ""
    status_code: int = 0
    status_msg: str = ""

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "UploadInitInfo":
        nested = payload.get("data")
        data: Mapping[str, Any] = nested if isinstance(nested, Mapping) else payload
        callback, callback_var = decode_callback(data.get("callback"))
        return cls(
            status=_as_int(data.get("status")),
            pick_code=str(_first(data, "pick_code", "pickcode", default="")),
            file_id=str(_first(data, "file_id", default="")),
            target=str(data.get("target") or ""),
            bucket=str(data.get("bucket") or ""),
            object_key=str(data.get("object") or ""),
            callback=callback,
            callback_var=callback_var,
            sign_key=str(data.get("sign_key") or ""),
            sign_check=str(data.get("sign_check") or ""),
            status_code=_as_int(payload.get("statuscode")),
            status_msg=str(payload.get("statusmsg") or ""),
        )

    @classmethod
    def existing(cls, pick_code: str, file_id: str = "") -> "UploadInitInfo":
        """A synthesized "already exists" answer."""
        return cls(status=c.STATUS_EXISTS, pick_code=pick_code, file_id=file_id)

    @property
    def has_transfer_target(self) -> bool:
        return bool(self.bucket and self.object_key and self.callback)

    @property
    def encoded_callback(self) -> str:
        return encode_callback(self.callback)

    @property
    def encoded_callback_var(self) -> str:
        return encode_callback(self.callback_var)


@dataclass(frozen=True)
class SampleInitInfo:
    """Form-upload parameters returned by the sample init call."""

    object_key: str
    access_id: str
    host: str
    policy: str
    signature: str
    callback: str
    expire: int = 0

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "SampleInitInfo":
        errno = _as_int(payload.get("errno"))
        if errno or payload.get("error"):
            raise APIError(
                f"sample init failed: {payload.get('error') or 'unknown error'}",
                errno=errno or None,
            )
        host = str(payload.get("host") or "")
        if not host:
            raise ProtocolError("sample init response is missing host")
        return cls(
            object_key=str(payload.get("object") or ""),
            access_id=str(payload.get("accessid") or ""),
            host=host,
            policy=str(payload.get("policy") or ""),
            signature=str(payload.get("signature") or ""),
            callback=str(payload.get("callback") or ""),
            expire=_as_int(payload.get("expire")),
        )


@dataclass(frozen=True)
class CallbackData:
    """Object record reported by the upload callback."""

    file_id: str
    file_name: str
    file_size: int
    pick_code: str
    sha1: str
    cid: str = ""
    aid: str = ""
    is_video: bool = False
    thumb_url: str = ""

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "CallbackData":
        _check_state(payload, "upload callback")
        nested = payload.get("data")
        data: Mapping[str, Any] = nested if isinstance(nested, Mapping) else payload
        pick_code = str(_first(data, "pick_code", "pickcode", default=""))
        if not pick_code:
            raise ProtocolError("upload callback is missing pick_code")
        return cls(
            file_id=str(_first(data, "file_id", "fid", default="")),
            file_name=str(_first(data, "file_name", "name", default="")),
            file_size=_as_int(data.get("file_size")),
            pick_code=pick_code,
            sha1=str(data.get("sha1") or "").lower(),
            cid=str(data.get("cid") or ""),
            aid=str(data.get("aid") or ""),
            is_video=bool(_as_int(data.get("is_video"))),
            thumb_url=str(data.get("thumb_url") or ""),
        )


def parse_callback_result(raw: Union[bytes, str, Mapping[str, Any]]) -> CallbackData:
    """Decode the callback body returned by the object store or form upload."""
    if isinstance(raw, Mapping):
        return CallbackData.from_response(raw)
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("upload callback is not valid JSON", cause=exc) from exc
    if not isinstance(payload, Mapping):
        raise ProtocolError("upload callback is not a JSON object")
    return CallbackData.from_response(payload)


@dataclass(frozen=True)
class FileEntry:
    """One file or directory as listed by the drive."""

    id: str
    name: str
    parent_id: str = ""
    size: int = 0
    sha1: str = ""
    pick_code: str = ""
    is_dir: bool = False
    mod_time: int = 0

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "FileEntry":
        category = _first(data, "fc", "file_category")
        if category is not None:
            is_dir = str(category) == "0"
        else:
            is_dir = not _first(data, "fid", "sha", "sha1") and bool(data.get("cid"))
        if is_dir and not _first(data, "fid", "file_id"):
            entry_id = str(_first(data, "cid", default=""))
            parent_id = str(_first(data, "pid", "parent_id", default=""))
        else:
            entry_id = str(_first(data, "fid", "file_id", default=""))
            parent_id = str(_first(data, "pid", "parent_id", "cid", default=""))
        return cls(
            id=entry_id,
            name=str(_first(data, "fn", "n", "file_name", "name", default="")),
            parent_id=parent_id,
            size=_as_int(_first(data, "fs", "s", "file_size", "size")),
            sha1=str(_first(data, "sha1", "sha", default="")).lower(),
            pick_code=str(_first(data, "pc", "pick_code", "pickcode", default="")),
            is_dir=is_dir,
            mod_time=_as_int(_first(data, "upt", "user_utime", "te", "t")),
        )

    def matches_content(self, sha1: str, size: int) -> bool:
        return not self.is_dir and self.sha1.lower() == sha1.lower() and self.size == size


@dataclass(frozen=True)
class DownloadURL:
    """A signed download URL with its embedded expiry (unix seconds)."""

    url: str
    expires_at: Optional[float] = None

    @classmethod
    def from_url(cls, url: str) -> "DownloadURL":
        query = parse_qs(urlparse(url).query)
        expires_at: Optional[float] = None
        for key in ("t", "Expires"):
            values = query.get(key)
            if values and values[0].isdigit():
                expires_at = float(values[0])
                break
        return cls(url=url, expires_at=expires_at)

    @classmethod
    def from_response(cls, raw: Any) -> "DownloadURL":
        """Accept ``{"url": "..."}`` or a bare string."""
        if isinstance(raw, Mapping):
            raw = raw.get("url") or ""
        if not isinstance(raw, str) or not raw:
            raise ProtocolError("download URL response is empty")
        return cls.from_url(raw)

    def expired(
        self,
        now: Optional[float] = None,
        delta: float = c.DOWNLOAD_URL_EXPIRY_DELTA,
    ) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - delta
