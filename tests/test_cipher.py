"""Tests for the encrypted negotiation channel.

p115cipher does the key exchange itself; these tests check how its output
is handed to requests and how decode failures surface.
"""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from driveupload import cipher as cipher_module
from driveupload.cipher import EcdhChannel
from driveupload.errors import PayloadDecodeError, TransientError


@pytest.fixture
def channel() -> EcdhChannel:
    return EcdhChannel()


class TestSeal:
    def test_library_payload_passed_through(self, channel: EcdhChannel, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: List[Dict[str, Any]] = []

        def fake_payload(form: Dict[str, Any]) -> Dict[str, Any]:
            seen.append(form)
            return {"params": {"k_ec": "tok"}, "data": b"sealed"}

        monkeypatch.setattr(cipher_module, "make_upload_payload", fake_payload)
        request = channel.seal({"fileid": "ABC", "filesize": "11"})

        assert seen == [{"fileid": "ABC", "filesize": "11"}]
        assert request == {"params": {"k_ec": "tok"}, "data": b"sealed"}

    def test_real_payload_carries_key_token(self, channel: EcdhChannel) -> None:
        request = channel.seal({"userid": "1", "fileid": "ABC", "filesize": "11"})
        assert request["params"]["k_ec"]
        assert request["data"]
        assert b"fileid=ABC" not in bytes(request["data"])


class TestOpen:
    def test_decompressed_answer_returned(self, channel: EcdhChannel, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: List[Dict[str, Any]] = []

        def fake_decrypt(content: bytes, decompress: bool = False) -> bytes:
            calls.append({"content": content, "decompress": decompress})
            return b'{"status": 2}'

        monkeypatch.setattr(cipher_module, "ecdh_aes_decrypt", fake_decrypt)
        assert channel.open(b"ciphertext") == b'{"status": 2}'
        assert calls == [{"content": b"ciphertext", "decompress": True}]

    def test_library_failure_becomes_decode_error(self, channel: EcdhChannel, monkeypatch: pytest.MonkeyPatch) -> None:
        def broken(content: bytes, decompress: bool = False) -> bytes:
            raise ValueError("corrupt input")

        monkeypatch.setattr(cipher_module, "ecdh_aes_decrypt", broken)
        with pytest.raises(PayloadDecodeError) as exc_info:
            channel.open(b"x" * 32)
        assert isinstance(exc_info.value, TransientError)
        assert exc_info.value.details["size"] == 32
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_empty_response(self, channel: EcdhChannel) -> None:
        with pytest.raises(PayloadDecodeError, match="empty"):
            channel.open(b"")
