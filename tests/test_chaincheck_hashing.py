"""
Tests for canonical payload hashing.
"""

import hashlib

import pytest

from tools.chaincheck.hashing import (
    canonicalize,
    content_equal,
    hashes_equal,
    is_zero_hash,
    normalize_hash,
    payload_hash,
    strip_metadata,
)


class TestCanonicalForm:
    """Canonical JSON is sorted, compact and UTF-8."""

    def test_sorted_compact(self):
        assert canonicalize({"b": 1, "a": {"d": 2, "c": 3}}) == b'{"a":{"c":3,"d":2},"b":1}'

    def test_integral_float_serializes_as_int(self):
        assert canonicalize({"n": 2.0, "m": 2.5}) == b'{"m":2.5,"n":2}'

    @pytest.mark.parametrize("value, expected", [
        (1e-7, b"1e-7"),
        (-1.5e-7, b"-1.5e-7"),
        (0.000001, b"0.000001"),
        (0.00001, b"0.00001"),
        (0.25, b"0.25"),
        (123.456, b"123.456"),
    ])
    def test_float_notation(self, value, expected):
        assert canonicalize({"n": value}) == b'{"n":' + expected + b"}"

    def test_nested_floats_use_same_notation(self):
        assert canonicalize({"a": [1e-7, {"b": 0.00001}]}) == b'{"a":[1e-7,{"b":0.00001}]}'

    def test_non_ascii_is_not_escaped(self):
        assert canonicalize({"city": "Zürich"}) == '{"city":"Zürich"}'.encode("utf-8")

    def test_tuples_become_lists(self):
        assert canonicalize({"t": (1, 2)}) == b'{"t":[1,2]}'

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            canonicalize({"x": float("nan")})

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            canonicalize({"x": object()})


class TestPayloadHash:
    """Content hashes ignore metadata and key order."""

    def test_matches_sha256_of_canonical_form(self):
        payload = {"schema": "network.xyo.chaincheck", "data": {"status": "delivered"}}
        expected = hashlib.sha256(
            b'{"data":{"status":"delivered"},"schema":"network.xyo.chaincheck"}'
        ).hexdigest()
        assert payload_hash(payload) == expected

    def test_metadata_keys_excluded(self):
        base = {"schema": "s", "data": {"a": 1}}
        with_meta = dict(base, _hash="ab" * 32, _timestamp=1700000000000, _sequence="0001")
        assert payload_hash(base) == payload_hash(with_meta)

    def test_only_top_level_metadata_stripped(self):
        assert strip_metadata({"_hash": "x", "data": {"_inner": 1}}) == {"data": {"_inner": 1}}

    def test_key_order_irrelevant(self):
        assert payload_hash({"a": 1, "b": 2}) == payload_hash({"b": 2, "a": 1})

    def test_content_change_changes_hash(self):
        assert payload_hash({"status": "delivered"}) != payload_hash({"status": "failed"})

    def test_content_equal_ignores_metadata(self):
        assert content_equal({"a": 1, "_hash": "x"}, {"a": 1, "_hash": "y"})
        assert not content_equal({"a": 1}, {"a": 2})


class TestHashHelpers:
    """Hash normalization and the origin sentinel."""

    def test_normalize_drops_prefix_and_case(self):
        assert normalize_hash("0xABCdef") == "abcdef"

    def test_hashes_equal(self):
        assert hashes_equal("0xAB", "ab")
        assert not hashes_equal("ab", "cd")
        assert not hashes_equal(None, "ab")
        assert not hashes_equal("", "")

    @pytest.mark.parametrize("value,expected", [
        ("0" * 64, True),
        ("0x" + "0" * 64, True),
        ("0", True),
        ("0x01", False),
        ("", False),
        (None, False),
    ])
    def test_is_zero_hash(self, value, expected):
        assert is_zero_hash(value) is expected
