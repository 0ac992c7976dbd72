"""Idempotency key and correlation id generation."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from idem_guard.errors import InvalidKeyError
from idem_guard.models import IdempotencyRequest, KeyComponents
from idem_guard.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 128
SEPARATOR = ":"
_TRUNCATED_PREFIX_LENGTH = 120
_KEY_DISALLOWED = re.compile(r"[^A-Za-z0-9_:-]")
_COMPONENT_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")
_VALID_KEY = re.compile(r"[A-Za-z0-9_:-]+")


def sha256_hex(value: str) -> str:
    """Hex SHA-256 of a UTF-8 string."""

    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class KeyGenerator:
    """Derives stable keys from request content.

    Auto keys have the shape ``KIND:NAME:YYYYMMDD:HASH16`` so identical
    requests submitted on the same UTC day collapse onto one key. The only
    input besides the request is the injected clock.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def generate_key(self, request: IdempotencyRequest) -> str:
        if request.has_client_key():
            return self.sanitize_client_key(request.client_provided_key or "")
        return self._generate_auto_key(request)

    def generate_correlation_id(self) -> str:
        timestamp = self._clock().strftime("%Y%m%d_%H%M%S")
        return f"IDEM_{timestamp}_{uuid4().hex[:8]}"

    def sanitize_client_key(self, key: str) -> str:
        if not key or not key.strip():
            raise InvalidKeyError("Idempotency key cannot be null or empty.")
        sanitized = _KEY_DISALLOWED.sub("_", key.strip())
        return _bound_length(sanitized)

    def _generate_auto_key(self, request: IdempotencyRequest) -> str:
        date_component = self._clock().strftime("%Y%m%d")
        key = SEPARATOR.join(
            (
                request.target_kind.value,
                _sanitize_component(request.target_name),
                date_component,
                content_hash16(request),
            ),
        )
        logger.debug("Generated idempotency key %s for %s", key, request.summary())
        return _bound_length(key)


def content_hash16(request: IdempotencyRequest) -> str:
    """Hash of the highest-priority discriminator the request carries."""

    material = _discriminator(request)
    if material is None:
        logger.debug(
            "No discriminator on %s; duplicate protection is not possible for this call",
            request.summary(),
        )
        return sha256_hex(f"{time.time_ns()}{uuid4().hex}")[:16]
    return sha256_hex(material)[:16]


def _discriminator(request: IdempotencyRequest) -> str | None:
    if request.transaction_ref:
        return f"tx:{request.transaction_ref}"
    if request.content_hash:
        return f"file:{request.content_hash}"
    if request.request_hash:
        return f"req:{request.request_hash}"
    if request.file_path:
        return f"path:{request.file_path}"
    if request.has_parameters():
        return f"params:{sha256_hex(request.serialized_parameters())[:8]}"
    if request.has_payload():
        return f"payload:{sha256_hex(request.payload or '')[:8]}"
    return None


def is_valid_key(key: str | None) -> bool:
    """Whether ``key`` could be stored as-is."""

    if key is None or not key.strip():
        return False
    trimmed = key.strip()
    if len(trimmed) > MAX_KEY_LENGTH:
        return False
    return _VALID_KEY.fullmatch(trimmed) is not None


def extract_components(key: str) -> KeyComponents | None:
    """Split an auto-generated key into its parts for operators."""

    if not key or not key.strip():
        return None
    parts = key.split(SEPARATOR)
    if len(parts) < 3:
        return KeyComponents(raw_key=key)
    return KeyComponents(
        raw_key=key,
        target_kind=parts[0],
        target_name=parts[1],
        date_component=parts[2],
        content_hash=parts[3] if len(parts) > 3 else None,
    )


def _sanitize_component(value: str) -> str:
    return _COMPONENT_DISALLOWED.sub("_", value.strip()).upper()


def _bound_length(key: str) -> str:
    if len(key) <= MAX_KEY_LENGTH:
        return key
    logger.warning("Idempotency key too long (%d chars), truncating", len(key))
    return key[:_TRUNCATED_PREFIX_LENGTH] + sha256_hex(key)[:8]
