"""Resume tokens: opaque, versioned encoding of a suspended run.

Format: ``va1.<payload>.<signature>`` where ``payload`` is base64url JSON of
a ``Continuation`` record and ``signature`` is an HMAC-SHA256 of the payload.
Callers store the token and pass it back unmodified; anything else is
rejected with ``ResumeTokenError``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..models.continuation import CONTINUATION_VERSION, Continuation

logger = logging.getLogger(__name__)

TOKEN_PREFIX = f"va{CONTINUATION_VERSION}"
DEFAULT_SECRET = "vault-agent-resume"


class ResumeTokenError(Exception):
    """Raised when a resume token is malformed, tampered with or from another version."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class ResumeCodec:
    """Encode and decode continuation records as signed opaque strings."""

    def __init__(self, secret: Optional[str] = None) -> None:
        self._key = (secret or DEFAULT_SECRET).encode("utf-8")

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def encode(self, continuation: Continuation) -> str:
        payload = _b64encode(continuation.model_dump_json().encode("utf-8"))
        return f"{TOKEN_PREFIX}.{payload}.{self._sign(payload)}"

    def decode(self, token: str) -> Continuation:
        if not isinstance(token, str) or not token:
            raise ResumeTokenError("Resume token is empty")
        parts = token.strip().split(".")
        if len(parts) != 3:
            raise ResumeTokenError("Resume token is malformed")
        prefix, payload, signature = parts
        if prefix != TOKEN_PREFIX:
            raise ResumeTokenError(
                f"Unsupported resume token version: {prefix!r}",
                {"expected": TOKEN_PREFIX, "received": prefix},
            )
        if not hmac.compare_digest(signature, self._sign(payload)):
            logger.warning("Rejected resume token with bad signature")
            raise ResumeTokenError("Resume token signature mismatch")

        try:
            data = json.loads(_b64decode(payload).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ResumeTokenError(f"Resume token payload is unreadable: {e}") from e

        if not isinstance(data, dict) or data.get("version") != CONTINUATION_VERSION:
            raise ResumeTokenError(
                "Resume token has an unsupported continuation version",
                {"version": data.get("version") if isinstance(data, dict) else None},
            )
        try:
            return Continuation.model_validate(data)
        except ValidationError as e:
            raise ResumeTokenError(f"Resume token content is invalid: {e.error_count()} error(s)") from e


__all__ = ["ResumeCodec", "ResumeTokenError", "TOKEN_PREFIX"]
