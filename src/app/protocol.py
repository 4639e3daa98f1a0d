from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Literal, Union

from eth_utils import is_address, to_checksum_address

from errors import ValidationError

Outcome = Literal["player1_win", "player2_win", "draw"]

COMMITMENT_SIZE = 32


class Move(IntEnum):
    ROCK = 0
    PAPER = 1
    SCISSORS = 2

    @property
    def label(self) -> str:
        return self.name.lower()


_MOVE_ALIASES = {
    "r": Move.ROCK,
    "rock": Move.ROCK,
    "p": Move.PAPER,
    "paper": Move.PAPER,
    "s": Move.SCISSORS,
    "scissors": Move.SCISSORS,
}


def is_valid_move(value: object) -> bool:
    try:
        parse_move(value)
    except ValidationError:
        return False
    return True


def parse_move(value: object) -> Move:
    if isinstance(value, Move):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"invalid move: {value!r}")
    if isinstance(value, int):
        try:
            return Move(value)
        except ValueError:
            raise ValidationError(f"invalid move code: {value}") from None
    if isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            return parse_move(int(text))
        if text in _MOVE_ALIASES:
            return _MOVE_ALIASES[text]
    raise ValidationError(f"invalid move: {value!r} (expected rock|paper|scissors)")


def determine_outcome(player1: Move, player2: Move) -> Outcome:
    if player1 == player2:
        return "draw"

    wins = {
        (Move.ROCK, Move.SCISSORS),
        (Move.SCISSORS, Move.PAPER),
        (Move.PAPER, Move.ROCK),
    }
    return "player1_win" if (player1, player2) in wins else "player2_win"


def checksum_address(value: object, field_name: str = "address") -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"{field_name} is not a valid address: {value!r}")
    return to_checksum_address(value)


def parse_match_id(value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"invalid match id: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValidationError(f"invalid match id: {value!r}")
        value = int(text)
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"invalid match id: {value!r}")
    return value


def is_well_formed_commitment(value: object) -> bool:
    return (
        isinstance(value, (bytes, bytearray))
        and len(value) == COMMITMENT_SIZE
        and any(value)
    )


def _positive_amount(value: object, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field_name} must be a positive integer amount, got {value!r}")
    return value


def _require_salt(salt: object) -> None:
    if not isinstance(salt, str) or not salt.strip():
        raise ValidationError("salt must be a non-empty string")


def _require_commitment(commitment: object) -> None:
    if not is_well_formed_commitment(commitment):
        raise ValidationError("commitment must be 32 non-zero bytes")


# --- Transactions (state-mutating ledger calls) ---


@dataclass(frozen=True)
class DepositWithPermit:
    sender: str
    amount: int
    deadline: int
    v: int
    r: bytes
    s: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        _positive_amount(self.amount, "amount")
        _positive_amount(self.deadline, "deadline")
        if self.v not in (27, 28):
            raise ValidationError(f"signature v must be 27 or 28, got {self.v!r}")
        for name in ("r", "s"):
            part = getattr(self, name)
            if not isinstance(part, (bytes, bytearray)) or len(part) != 32:
                raise ValidationError(f"signature {name} must be 32 bytes")


@dataclass(frozen=True)
class Withdraw:
    sender: str
    amount: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        _positive_amount(self.amount, "amount")


@dataclass(frozen=True)
class CreateMatch:
    sender: str
    wager: int
    commitment: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        _positive_amount(self.wager, "wager")
        _require_commitment(self.commitment)


@dataclass(frozen=True)
class JoinMatch:
    sender: str
    match_id: int
    wager: int
    commitment: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        object.__setattr__(self, "match_id", parse_match_id(self.match_id))
        _positive_amount(self.wager, "wager")
        _require_commitment(self.commitment)


@dataclass(frozen=True)
class RevealMove:
    sender: str
    match_id: int
    move: Move
    salt: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        object.__setattr__(self, "match_id", parse_match_id(self.match_id))
        object.__setattr__(self, "move", parse_move(self.move))
        _require_salt(self.salt)


@dataclass(frozen=True)
class ResolveMatch:
    sender: str
    match_id: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", checksum_address(self.sender, "sender"))
        object.__setattr__(self, "match_id", parse_match_id(self.match_id))


TxIntent = Union[DepositWithPermit, Withdraw, CreateMatch, JoinMatch, RevealMove, ResolveMatch]


# --- Queries (read-only ledger calls) ---


@dataclass(frozen=True)
class PlayerBalance:
    address: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", checksum_address(self.address))


@dataclass(frozen=True)
class GetMatch:
    match_id: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "match_id", parse_match_id(self.match_id))


@dataclass(frozen=True)
class MatchWinner:
    match_id: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "match_id", parse_match_id(self.match_id))


@dataclass(frozen=True)
class PermitNonce:
    owner: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner", checksum_address(self.owner, "owner"))


LedgerQuery = Union[PlayerBalance, GetMatch, MatchWinner, PermitNonce]
