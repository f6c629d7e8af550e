"""Unit tests for store key namespacing."""

import pytest

from kvguard.adapters.store.keys import (
    bucket_keys,
    data_key,
    ensure_disjoint_prefixes,
    lock_key,
    prefixes_overlap,
    validate_prefix,
)
from kvguard.core.errors import ValidationAppError


def test_key_families() -> None:
    assert data_key("cache", "posts/42") == "cache:posts/42"
    assert lock_key("cache", "posts/42") == "lock:cache:posts/42"
    assert bucket_keys("ratelimit", "api_key:abc") == (
        "ratelimit:api_key:abc:tokens",
        "ratelimit:api_key:abc:ts",
    )


@pytest.mark.parametrize("prefix", ["lock", "lock:cache"])
def test_reserved_prefix_is_rejected(prefix: str) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        validate_prefix(prefix)

    assert exc_info.value.code == "reserved_prefix"


def test_prefix_merely_starting_with_lock_is_allowed() -> None:
    assert validate_prefix("locks") == "locks"


@pytest.mark.parametrize(
    "call",
    [
        lambda: validate_prefix(""),
        lambda: data_key("cache", ""),
        lambda: lock_key("cache", ""),
        lambda: bucket_keys("ratelimit", ""),
    ],
)
def test_empty_components_are_rejected(call) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        call()

    assert exc_info.value.code == "empty_key"


@pytest.mark.parametrize(
    "namespace, prefix",
    [("shared", "shared"), ("a", "a:b"), ("a:b", "a")],
)
def test_overlapping_cache_and_limiter_prefixes_are_rejected(namespace: str, prefix: str) -> None:
    assert prefixes_overlap(namespace, prefix)

    with pytest.raises(ValidationAppError) as exc_info:
        ensure_disjoint_prefixes(namespace, prefix)

    assert exc_info.value.code == "overlapping_prefix"


@pytest.mark.parametrize("namespace, prefix", [("cache", "ratelimit"), ("a", "ab"), ("api", "api-rl")])
def test_disjoint_prefixes_are_accepted(namespace: str, prefix: str) -> None:
    assert not prefixes_overlap(namespace, prefix)
    ensure_disjoint_prefixes(namespace, prefix)

    # No data key of one family can equal a bucket key of the other
    assert data_key(namespace, "ip:1.2.3.4:tokens") not in bucket_keys(prefix, "ip:1.2.3.4")
