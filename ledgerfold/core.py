"""Hashing, canonical encoding and timestamps shared by every ledgerfold module.

Everything that is hashed or signed goes through ``canonical_json_bytes`` so
that two processes holding equal values always commit to equal bytes:

- object keys sorted, no insignificant whitespace, UTF-8 output
- floats refused outright; amounts and timings travel as ints or strings

Digests are lowercase hex SHA-256 throughout. Signatures and key material
use unpadded base64url, as in JWK/JWS.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any

# Predecessor hash of the first provenance entry of every item.
GENESIS_HASH = "00" * 32

_SHA256_HEX = re.compile(r"[0-9a-f]{64}")


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _check_no_floats(value: Any, where: str) -> None:
    if isinstance(value, float):
        raise ValueError(f"Float not allowed in canonical JSON at {where or '$'}")
    if isinstance(value, dict):
        for key, item in value.items():
            _check_no_floats(item, f"{where}.{key}")
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_no_floats(item, f"{where}[{index}]")


def canonical_json_bytes(obj: Any) -> bytes:
    """Canonical UTF-8 JSON for ``obj``; raises ValueError on any float."""
    _check_no_floats(obj, "")
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """SHA-256 of the canonical JSON encoding of ``obj``."""
    return sha256_bytes(canonical_json_bytes(obj))


def is_valid_sha256(digest: Any) -> bool:
    return isinstance(digest, str) and _SHA256_HEX.fullmatch(digest) is not None


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def now_iso8601() -> str:
    """Current UTC time, ISO 8601 with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")
