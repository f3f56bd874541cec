"""CRM kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_string_list
from .schema_hash import schema_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "canonical_string_list",
    "schema_hash",
]
