from __future__ import annotations

import base64
import secrets
from enum import Enum
from typing import Final

from eth_abi.packed import encode_packed
from eth_utils import keccak

from errors import ValidationError
from protocol import Move, parse_move


class CommitScheme(str, Enum):
    # uint8(move) || utf8(salt)
    PACKED_UINT8 = "uint8-string"
    # utf8(lowercase move name) || utf8(salt)
    PACKED_STRING = "string-string"


DEFAULT_SCHEME: Final[CommitScheme] = CommitScheme.PACKED_UINT8


def parse_scheme(value: str | CommitScheme) -> CommitScheme:
    try:
        return CommitScheme(value)
    except ValueError:
        known = ", ".join(s.value for s in CommitScheme)
        raise ValidationError(f"unknown commit scheme {value!r} (expected one of: {known})") from None


def generate_salt(num_bytes: int = 16) -> str:
    # base64url without padding, safe to paste into a form or a shell.
    raw = secrets.token_bytes(num_bytes)
    return _b64url_nopad(raw)


def move_argument(move: Move, scheme: CommitScheme = DEFAULT_SCHEME) -> int | str:
    """Value of the ``move`` argument the verifier hashes for ``scheme``."""
    move = parse_move(move)
    if scheme is CommitScheme.PACKED_STRING:
        return move.label
    return int(move)


def encode(move: Move, salt: str, scheme: CommitScheme = DEFAULT_SCHEME) -> bytes:
    if not isinstance(salt, str) or not salt.strip():
        raise ValidationError("salt must be a non-empty string")
    scheme = parse_scheme(scheme)
    arg = move_argument(move, scheme)
    if scheme is CommitScheme.PACKED_STRING:
        return encode_packed(["string", "string"], [arg, salt])
    return encode_packed(["uint8", "string"], [arg, salt])


def compute_commitment(move: Move, salt: str, scheme: CommitScheme = DEFAULT_SCHEME) -> bytes:
    return keccak(encode(move, salt, scheme))


def verify_commitment(
    *,
    expected_commitment: bytes,
    move: Move,
    salt: str,
    scheme: CommitScheme = DEFAULT_SCHEME,
) -> bool:
    computed = compute_commitment(move, salt, scheme)
    return secrets.compare_digest(bytes(expected_commitment), computed)


def _b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")
