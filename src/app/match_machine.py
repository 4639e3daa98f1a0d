"""Match lifecycle: CREATED -> JOINED -> REVEALING -> REVEALED -> RESOLVED.

Every transition takes a ``MatchRecord`` and returns a new one. A failed
precondition raises ``ProtocolViolation`` and leaves the input untouched.
The same checks run on the ledger (``memory_ledger``) and on the client
before it spends a transaction (``rps_client``).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from commit_reveal import DEFAULT_SCHEME, CommitScheme, verify_commitment
from errors import ProtocolViolation, ValidationError
from protocol import Move, Outcome, determine_outcome, is_well_formed_commitment, parse_move


class MatchPhase(str, Enum):
    CREATED = "created"
    JOINED = "joined"
    REVEALING = "revealing"
    REVEALED = "revealed"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class MatchRecord:
    match_id: int
    creator: str
    wager: int
    creator_commitment: bytes
    opponent: str | None = None
    opponent_commitment: bytes | None = None
    creator_move: Move | None = None
    opponent_move: Move | None = None
    winner: str | None = None
    resolved: bool = False

    @property
    def phase(self) -> MatchPhase:
        if self.resolved:
            return MatchPhase.RESOLVED
        if self.opponent is None:
            return MatchPhase.CREATED
        revealed = (self.creator_move is not None) + (self.opponent_move is not None)
        if revealed == 2:
            return MatchPhase.REVEALED
        if revealed == 1:
            return MatchPhase.REVEALING
        return MatchPhase.JOINED

    @property
    def pool(self) -> int:
        return self.wager * (2 if self.opponent is not None else 1)

    def is_participant(self, address: str) -> bool:
        return _same(address, self.creator) or (self.opponent is not None and _same(address, self.opponent))

    def has_revealed(self, address: str) -> bool:
        if _same(address, self.creator):
            return self.creator_move is not None
        if self.opponent is not None and _same(address, self.opponent):
            return self.opponent_move is not None
        return False


@dataclass(frozen=True)
class Settlement:
    outcome: Outcome
    winner: str | None
    payouts: dict[str, int] = field(default_factory=dict)


def create(match_id: int, creator: str, wager: int, commitment: bytes) -> MatchRecord:
    if isinstance(wager, bool) or not isinstance(wager, int) or wager <= 0:
        raise ProtocolViolation("invalid_wager", f"wager must be positive, got {wager!r}")
    if not is_well_formed_commitment(commitment):
        raise ProtocolViolation("malformed_commitment", "commitment must be 32 non-zero bytes")
    return MatchRecord(
        match_id=match_id,
        creator=creator,
        wager=wager,
        creator_commitment=bytes(commitment),
    )


def join(record: MatchRecord, caller: str, wager: int, commitment: bytes) -> MatchRecord:
    if record.resolved:
        raise ProtocolViolation("already_resolved", f"match {record.match_id} is already resolved")
    if record.opponent is not None:
        raise ProtocolViolation("already_joined", f"match {record.match_id} already has an opponent")
    if _same(caller, record.creator):
        raise ProtocolViolation("self_join", "the creator cannot join their own match")
    if wager != record.wager:
        raise ProtocolViolation(
            "wager_mismatch",
            f"match {record.match_id} requires a wager of {record.wager}, got {wager}",
        )
    if not is_well_formed_commitment(commitment):
        raise ProtocolViolation("malformed_commitment", "commitment must be 32 non-zero bytes")
    return replace(record, opponent=caller, opponent_commitment=bytes(commitment))


def reveal(
    record: MatchRecord,
    caller: str,
    move: Move,
    salt: str,
    scheme: CommitScheme = DEFAULT_SCHEME,
) -> MatchRecord:
    try:
        move = parse_move(move)
    except ValidationError as exc:
        raise ProtocolViolation("invalid_move", exc.message) from exc
    if record.resolved:
        raise ProtocolViolation("already_resolved", f"match {record.match_id} is already resolved")
    if record.opponent is None:
        raise ProtocolViolation("not_joined", f"match {record.match_id} has no opponent yet")
    if not record.is_participant(caller):
        raise ProtocolViolation("not_participant", f"{caller} is not a player in match {record.match_id}")
    if record.has_revealed(caller):
        raise ProtocolViolation("already_revealed", f"{caller} already revealed in match {record.match_id}")
    if not isinstance(salt, str) or not salt.strip():
        raise ProtocolViolation("commitment_mismatch", "an empty salt cannot open a commitment")

    is_creator = _same(caller, record.creator)
    stored = record.creator_commitment if is_creator else record.opponent_commitment
    if stored is None or not verify_commitment(expected_commitment=stored, move=move, salt=salt, scheme=scheme):
        raise ProtocolViolation("commitment_mismatch", "revealed move and salt do not match the commitment")

    if is_creator:
        return replace(record, creator_move=move)
    return replace(record, opponent_move=move)


def resolve(record: MatchRecord) -> tuple[MatchRecord, Settlement]:
    if record.resolved:
        raise ProtocolViolation("already_resolved", f"match {record.match_id} is already resolved")
    if record.creator_move is None or record.opponent_move is None or record.opponent is None:
        raise ProtocolViolation("not_ready", f"match {record.match_id} is waiting for both reveals")

    outcome = determine_outcome(record.creator_move, record.opponent_move)
    if outcome == "draw":
        winner = None
        payouts = {record.creator: record.wager, record.opponent: record.wager}
    else:
        winner = record.creator if outcome == "player1_win" else record.opponent
        payouts = {winner: record.wager * 2}
    resolved = replace(record, winner=winner, resolved=True)
    return resolved, Settlement(outcome=outcome, winner=winner, payouts=payouts)


def outcome_of(record: MatchRecord) -> Outcome | None:
    if record.creator_move is None or record.opponent_move is None:
        return None
    return determine_outcome(record.creator_move, record.opponent_move)


def _same(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.lower() == b.lower()
