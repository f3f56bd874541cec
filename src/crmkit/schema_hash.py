"""Schema snapshot hashing utilities."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def schema_hash(schema_obj: Any) -> str:
    """Return the canonical SHA-256 hash for a serialized schema snapshot."""
    data = canonical_dumps(schema_obj).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"
