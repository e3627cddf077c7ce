"""Encrypted request channel for quick-upload negotiation.

The key exchange is done by p115cipher: ``make_upload_payload`` encrypts the
form against the drive's ECDH server key and puts the client key in the
``k_ec`` query token, and ``ecdh_aes_decrypt`` reverses the answer (AES, then
LZ4 block decompression). This module adapts both to the client's request
kwargs and error types.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from p115cipher import ecdh_aes_decrypt, make_upload_payload

from driveupload.errors import PayloadDecodeError

logger = logging.getLogger(__name__)

__all__ = ["EcdhChannel"]


class EcdhChannel:
    """Seals negotiation forms and opens the answers."""

    def seal(self, form: Mapping[str, Any]) -> Dict[str, Any]:
        """Request kwargs for one negotiation call.

        The result carries ``params`` (with ``k_ec``) and the encrypted
        ``data`` body, ready to pass to ``requests``.
        """
        return dict(make_upload_payload(dict(form)))

    def open(self, content: bytes) -> bytes:
        """Decrypt and decompress a negotiation response.

        Raises:
            PayloadDecodeError: the body is empty, truncated or not valid LZ4
        """
        if not content:
            raise PayloadDecodeError("empty negotiation response")
        try:
            return bytes(ecdh_aes_decrypt(content, decompress=True))
        except Exception as exc:
            logger.debug("Negotiation response of %d bytes failed to decode", len(content))
            raise PayloadDecodeError(
                "undecodable negotiation response",
                details={"size": len(content)},
                cause=exc,
            ) from exc
