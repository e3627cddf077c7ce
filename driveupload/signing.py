"""Request signing for quick-upload negotiation."""

from __future__ import annotations

import hashlib
from typing import Dict

from driveupload import constants as c

__all__ = ["build_init_form", "generate_signature", "generate_token", "make_target"]


def make_target(dir_id: str) -> str:
    return f"{c.TARGET_PREFIX}{dir_id}"


def generate_signature(user_id: str, file_id: str, target: str, user_key: str) -> str:
    """Sign the (user, content, target) triple with the uploader's key.

    Args:
        user_id: Numeric uploader id as a string
        file_id: Upper-case SHA-1 of the whole object
        target: Upload target, ``U_1_<dir id>``
        user_key: Secret key returned with the uploader identity

    Returns:
        Upper-case hex signature
    """
    inner = hashlib.sha1(f"{user_id}{file_id}{target}0".encode()).hexdigest()
    return hashlib.sha1(f"{user_key}{inner}000000".encode()).hexdigest().upper()


def generate_token(
    user_id: str,
    file_id: str,
    file_size: str,
    sign_key: str,
    sign_val: str,
    timestamp: str,
    app_version: str,
) -> str:
    """Per-request token tying the form fields to a timestamp.

    ``sign_key``/``sign_val`` are empty strings until the server issues a
    range challenge.
    """
    user_id_md5 = hashlib.md5(user_id.encode()).hexdigest()
    payload = (
        c.TOKEN_SALT
        + file_id
        + file_size
        + sign_key
        + sign_val
        + user_id
        + timestamp
        + user_id_md5
        + app_version
    )
    return hashlib.md5(payload.encode()).hexdigest()


def build_init_form(
    *,
    user_id: str,
    user_key: str,
    file_id: str,
    file_name: str,
    file_size: int,
    dir_id: str,
    timestamp_ms: int,
    app_version: str,
    sign_key: str = "",
    sign_val: str = "",
) -> Dict[str, str]:
    """Assemble the negotiation form.

    ``sign_key`` and ``sign_val`` are only sent when both are present.
    """
    target = make_target(dir_id)
    timestamp = str(timestamp_ms)
    size_text = str(file_size)
    form = {
        "appid": "0",
        "appversion": app_version,
        "userid": user_id,
        "filename": file_name,
        "filesize": size_text,
        "fileid": file_id,
        "target": target,
        "sig": generate_signature(user_id, file_id, target, user_key),
        "t": timestamp,
        "token": generate_token(
            user_id, file_id, size_text, sign_key, sign_val, timestamp, app_version
        ),
    }
    if sign_key and sign_val:
        form["sign_key"] = sign_key
        form["sign_val"] = sign_val
    return form
