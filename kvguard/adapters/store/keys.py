"""Key namespacing for cache data, population locks and rate limit buckets.

Data keys live under ``<namespace>:``, their locks under ``lock:<namespace>:``
and bucket state under ``<prefix>:``. Namespaces and limiter prefixes must not
start with ``lock`` so the three families never overlap.
"""

from __future__ import annotations

from kvguard.core.errors import ValidationAppError

LOCK_PREFIX = "lock"


def _require(value: str, what: str) -> None:
    if not value:
        raise ValidationAppError(
            code="empty_key",
            message=f"{what} must be a non-empty string",
        )


def validate_prefix(prefix: str, what: str = "namespace") -> str:
    """Reject empty prefixes and prefixes that would collide with lock keys."""
    _require(prefix, what)
    if prefix == LOCK_PREFIX or prefix.startswith(f"{LOCK_PREFIX}:"):
        raise ValidationAppError(
            code="reserved_prefix",
            message=f"{what} must not use the reserved '{LOCK_PREFIX}' prefix",
        )
    return prefix


def data_key(namespace: str, key: str) -> str:
    _require(key, "cache key")
    return f"{namespace}:{key}"


def lock_key(namespace: str, key: str) -> str:
    return f"{LOCK_PREFIX}:{data_key(namespace, key)}"


def bucket_keys(prefix: str, key: str) -> tuple[str, str]:
    """Return ``(tokens_key, timestamp_key)`` for a limiter key."""
    _require(key, "rate limit key")
    base = f"{prefix}:{key}"
    return f"{base}:tokens", f"{base}:ts"


def prefixes_overlap(first: str, second: str) -> bool:
    """True when keys under one prefix can also be keys under the other."""
    return (
        first == second
        or first.startswith(f"{second}:")
        or second.startswith(f"{first}:")
    )


def ensure_disjoint_prefixes(namespace: str, prefix: str) -> None:
    """Reject a cache namespace and limiter prefix whose key families overlap.

    Raises:
        ValidationAppError: If one equals the other or nests under it.
    """
    if prefixes_overlap(namespace, prefix):
        raise ValidationAppError(
            code="overlapping_prefix",
            message=(
                f"cache namespace '{namespace}' and rate limit prefix '{prefix}' "
                "must not share a key family"
            ),
        )
