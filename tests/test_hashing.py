from __future__ import annotations

import hashlib

import pytest

from bmk.hashing import DEFAULT_SALT, make_filename_hasher, sha256_hex


def test_single_round_hashes_data_followed_by_salt() -> None:
    expected = hashlib.sha256(b"app.jssalt").hexdigest()
    assert sha256_hex("app.js", salt="salt", stretching=1) == expected


def test_stretching_rehashes_previous_digest_with_salt() -> None:
    first = hashlib.sha256(b"app.jssalt").digest()
    second = hashlib.sha256(first + b"salt").digest()
    third = hashlib.sha256(second + b"salt").hexdigest()
    assert sha256_hex("app.js", salt="salt", stretching=3) == third


def test_hash_is_deterministic_and_lowercase_hex() -> None:
    first = sha256_hex("app.js", salt=DEFAULT_SALT, stretching=50)
    second = sha256_hex("app.js", salt=DEFAULT_SALT, stretching=50)
    assert first == second
    assert len(first) == 64
    assert first == first.lower()
    int(first, 16)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"data": "other.js", "salt": "s", "stretching": 10},
        {"data": "app.js", "salt": "t", "stretching": 10},
        {"data": "app.js", "salt": "s", "stretching": 11},
    ],
)
def test_changing_any_input_changes_the_hash(kwargs) -> None:
    baseline = sha256_hex("app.js", salt="s", stretching=10)
    data = kwargs.pop("data")
    assert sha256_hex(data, **kwargs) != baseline


def test_utf8_filenames_are_supported() -> None:
    expected = hashlib.sha256("ブック.js".encode("utf-8")).hexdigest()
    assert sha256_hex("ブック.js") == expected


@pytest.mark.parametrize("stretching", [0, -1])
def test_stretching_below_one_is_rejected(stretching: int) -> None:
    with pytest.raises(ValueError):
        sha256_hex("app.js", stretching=stretching)
    with pytest.raises(ValueError):
        make_filename_hasher("salt", stretching)


def test_filename_hasher_binds_salt_and_stretching() -> None:
    hasher = make_filename_hasher("pepper", 7)
    assert hasher("a.js") == sha256_hex("a.js", salt="pepper", stretching=7)
    assert hasher("a.js") != hasher("b.js")
