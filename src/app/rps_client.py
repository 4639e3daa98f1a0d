"""User-facing actions: deposit, withdraw, create, join, reveal, resolve, status.

Every action takes an explicit ``Session`` (signer, ledger, deployment
config, connected account). Inputs are validated before the first network
call, match preconditions are checked against a fresh read before a
transaction is spent, and each action ends in exactly one value or one
typed ``RpsError``.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

import match_machine
from commit_reveal import compute_commitment
from errors import (
    LedgerRevert,
    ProtocolViolation,
    RpsError,
    SignerRejection,
    StaleAuthorization,
    TransportFailure,
    ValidationError,
    classify_revert,
)
from ledger import DecodeKind, Ledger, Receipt, decode_match_id
from match_machine import MatchPhase, MatchRecord
from permit import build_permit, sign_permit
from protocol import (
    CreateMatch,
    DepositWithPermit,
    GetMatch,
    JoinMatch,
    MatchWinner,
    Move,
    Outcome,
    PermitNonce,
    PlayerBalance,
    ResolveMatch,
    RevealMove,
    TxIntent,
    Withdraw,
    checksum_address,
    parse_match_id,
    parse_move,
)
from settings import DeploymentConfig
from signers import Signer

logger = logging.getLogger(__name__)


@dataclass
class Session:
    signer: Signer
    ledger: Ledger
    config: DeploymentConfig
    account: str
    clock: Callable[[], float] = time.time
    closed: bool = False
    inflight: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class MatchCreation:
    tx_hash: bytes
    match_id: int | None
    decode: DecodeKind
    commitment: bytes


@dataclass(frozen=True)
class MatchStatus:
    match_id: int
    phase: MatchPhase
    record: MatchRecord
    outcome: Outcome | None
    winner: str | None

    @classmethod
    def from_record(cls, record: MatchRecord) -> "MatchStatus":
        return cls(
            match_id=record.match_id,
            phase=record.phase,
            record=record,
            outcome=match_machine.outcome_of(record),
            winner=record.winner,
        )


@dataclass(frozen=True)
class ActionOutcome:
    action: str
    ok: bool
    value: Any = None
    category: str | None = None
    message: str | None = None
    retryable: bool = False


async def connect(
    signer: Signer,
    ledger: Ledger,
    config: DeploymentConfig,
    *,
    clock: Callable[[], float] = time.time,
) -> Session:
    addresses = await signer.request_addresses()
    if not addresses:
        raise SignerRejection("the signer did not provide an account")
    account = checksum_address(addresses[0], "account")
    logger.info("session connected for %s", account)
    return Session(signer=signer, ledger=ledger, config=config, account=account, clock=clock)


def disconnect(session: Session) -> None:
    session.closed = True
    logger.info("session disconnected for %s", session.account)


def _single_flight(action: str):
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(session: Session, *args, **kwargs):
            if session.closed:
                raise ValidationError("session is disconnected")
            if action in session.inflight:
                raise ValidationError(f"{action} is already in progress")
            session.inflight.add(action)
            try:
                return await fn(session, *args, **kwargs)
            except LedgerRevert as exc:
                failure = classify_revert(exc)
                logger.info("%s rejected by ledger: %s", action, exc.reason)
                raise failure from exc
            finally:
                session.inflight.discard(action)

        return wrapper

    return decorator


# --- Actions ---


@_single_flight("deposit")
async def deposit(session: Session, amount: int) -> bytes:
    amount = _amount(amount, "amount")
    cfg = session.config
    # Always the freshest nonce: two permits with the same nonce are mutually exclusive.
    nonce = await session.ledger.read(PermitNonce(session.account))
    permit = build_permit(
        session.account,
        cfg.game_address,
        amount,
        nonce,
        ttl=cfg.permit_ttl,
        now=session.clock(),
    )
    signed = await sign_permit(session.signer, cfg.permit_domain, permit)
    if permit.is_expired(session.clock()):
        raise StaleAuthorization("permit expired before it could be submitted")

    intent = DepositWithPermit(
        sender=session.account,
        amount=amount,
        deadline=permit.deadline,
        v=signed.v,
        r=signed.r,
        s=signed.s,
    )
    receipt = await _transact(session, intent)
    return receipt.tx_hash


@_single_flight("withdraw")
async def withdraw(session: Session, amount: int) -> bytes:
    amount = _amount(amount, "amount")
    receipt = await _transact(session, Withdraw(sender=session.account, amount=amount))
    return receipt.tx_hash


@_single_flight("create_match")
async def create_match(session: Session, wager: int, move: Move | str, salt: str) -> MatchCreation:
    wager = _amount(wager, "wager")
    move = parse_move(move)
    commitment = compute_commitment(move, salt, session.config.commit_scheme)

    receipt = await _transact(session, CreateMatch(sender=session.account, wager=wager, commitment=commitment))
    decoded = decode_match_id(session.ledger, receipt, session.config.game_address)
    return MatchCreation(
        tx_hash=receipt.tx_hash,
        match_id=decoded.match_id,
        decode=decoded.kind,
        commitment=commitment,
    )


@_single_flight("join_match")
async def join_match(session: Session, match_id: int | str, wager: int, move: Move | str, salt: str) -> bytes:
    match_id = parse_match_id(match_id)
    wager = _amount(wager, "wager")
    move = parse_move(move)
    commitment = compute_commitment(move, salt, session.config.commit_scheme)

    record = await session.ledger.read(GetMatch(match_id))
    match_machine.join(record, session.account, wager, commitment)

    intent = JoinMatch(sender=session.account, match_id=match_id, wager=wager, commitment=commitment)
    receipt = await _transact(session, intent)
    return receipt.tx_hash


@_single_flight("reveal_move")
async def reveal_move(session: Session, match_id: int | str, move: Move | str, salt: str) -> bytes:
    match_id = parse_match_id(match_id)
    move = parse_move(move)
    if not isinstance(salt, str) or not salt.strip():
        raise ValidationError("salt must be a non-empty string")

    record = await session.ledger.read(GetMatch(match_id))
    match_machine.reveal(record, session.account, move, salt, session.config.commit_scheme)

    receipt = await _transact(session, RevealMove(sender=session.account, match_id=match_id, move=move, salt=salt))
    return receipt.tx_hash


@_single_flight("resolve_match")
async def resolve_match(session: Session, match_id: int | str) -> MatchStatus:
    match_id = parse_match_id(match_id)
    record = await session.ledger.read(GetMatch(match_id))
    match_machine.resolve(record)

    await _transact(session, ResolveMatch(sender=session.account, match_id=match_id))
    return await _status(session, match_id)


@_single_flight("get_status")
async def get_status(session: Session, match_id: int | str) -> MatchStatus:
    return await _status(session, parse_match_id(match_id))


@_single_flight("get_balance")
async def get_balance(session: Session, address: str | None = None) -> int:
    address = session.account if address is None else checksum_address(address)
    return await session.ledger.read(PlayerBalance(address))


# --- Reporting ---

_VIOLATION_HINTS = {
    "commitment_mismatch": "The move and salt do not match the committed value.",
    "not_ready": "Both players must reveal before the match can be resolved.",
    "already_resolved": "This match has already been resolved.",
    "already_joined": "This match already has an opponent.",
    "already_revealed": "You have already revealed your move for this match.",
    "wager_mismatch": "Your wager must equal the creator's wager.",
    "self_join": "You cannot join your own match.",
    "not_participant": "You are not a player in this match.",
    "not_joined": "Nobody has joined this match yet.",
    "insufficient_balance": "Your balance is too low for this action.",
    "match_does_not_exist": "No match exists with that id.",
}


def describe_failure(err: RpsError) -> str:
    if isinstance(err, ValidationError):
        return f"Invalid input: {err.message}"
    if isinstance(err, SignerRejection):
        return "The request was declined in the wallet. You can try again."
    if isinstance(err, StaleAuthorization):
        return f"The deposit authorization is stale ({err.message}). Sign a fresh permit and retry."
    if isinstance(err, ProtocolViolation):
        return _VIOLATION_HINTS.get(err.code, err.message)
    if isinstance(err, TransportFailure):
        return f"The ledger could not be reached ({err.message}). Try the action again."
    return err.message


async def settle(action: str, pending: Awaitable[Any]) -> ActionOutcome:
    try:
        value = await pending
    except RpsError as err:
        return _failed(action, err)
    except Exception as exc:  # untyped failure from a transport library
        logger.exception("%s failed with an untyped error", action)
        return _failed(action, TransportFailure(f"{type(exc).__name__}: {exc}"))
    return ActionOutcome(action=action, ok=True, value=value)


def _failed(action: str, err: RpsError) -> ActionOutcome:
    return ActionOutcome(
        action=action,
        ok=False,
        category=err.category,
        message=describe_failure(err),
        retryable=err.retryable,
    )


# --- Helpers ---


async def _status(session: Session, match_id: int) -> MatchStatus:
    record = await session.ledger.read(GetMatch(match_id))
    if not record.resolved:
        return MatchStatus.from_record(record)
    # The winner mapping is the payout source of truth; the zero address means a draw.
    mapped = await session.ledger.read(MatchWinner(match_id))
    winner = None if int(mapped, 16) == 0 else checksum_address(mapped, "winner")
    if winner != record.winner:
        logger.warning("match %s: winner mapping %s disagrees with match record %s", match_id, winner, record.winner)
        record = replace(record, winner=winner)
    return MatchStatus.from_record(record)


async def _transact(session: Session, intent: TxIntent) -> Receipt:
    tx_hash = await session.ledger.submit(intent)
    logger.info("%s submitted: %s", type(intent).__name__, tx_hash.hex())
    receipt = await session.ledger.wait(tx_hash)
    logger.info("%s confirmed: %s", type(intent).__name__, receipt.tx_hash.hex())
    return receipt


def _amount(value: object, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer amount in base units, got {value!r}")
    if value <= 0:
        raise ValidationError(f"{field_name} must be positive, got {value}")
    return value
