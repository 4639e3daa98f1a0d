from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from eth_abi import encode as abi_encode
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import keccak

import match_machine
from commit_reveal import DEFAULT_SCHEME, CommitScheme
from errors import LedgerRevert, ProtocolViolation, TransportFailure
from ledger import (
    DEPOSITED,
    MATCH_CREATED,
    MATCH_JOINED,
    MATCH_RESOLVED,
    MOVE_REVEALED,
    WITHDRAWN,
    EventSchema,
    Ledger,
    LogEntry,
    Receipt,
)
from match_machine import MatchRecord
from permit import PermitAuthorization, PermitDomain, recover_permit_signer
from protocol import (
    CreateMatch,
    DepositWithPermit,
    GetMatch,
    JoinMatch,
    LedgerQuery,
    MatchWinner,
    PermitNonce,
    PlayerBalance,
    ResolveMatch,
    RevealMove,
    TxIntent,
    Withdraw,
    checksum_address,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass
class InMemoryMatchStore:
    matches: dict[int, MatchRecord] = field(default_factory=dict)
    next_match_id: int = 0


@dataclass
class AssetState:
    # Wallet balances of the funding asset and its permit nonces.
    balances: dict[str, int] = field(default_factory=dict)
    nonces: dict[str, int] = field(default_factory=dict)


class InMemoryLedger(Ledger):
    """A ledger that runs the game and asset contract rules in-process.

    Submissions execute atomically as ``intent.sender``; a failing one raises
    ``LedgerRevert`` and leaves all state as it was.
    """

    def __init__(
        self,
        *,
        game_address: str,
        permit_domain: PermitDomain,
        scheme: CommitScheme = DEFAULT_SCHEME,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.game_address = checksum_address(game_address, "game_address")
        self.permit_domain = permit_domain
        self.scheme = scheme
        self.store = InMemoryMatchStore()
        self.asset = AssetState()
        self.balances: dict[str, int] = {}
        self._clock = clock
        self._receipts: dict[bytes, Receipt] = {}
        self._tx_count = 0
        self._lock = asyncio.Lock()

    # --- Test/dev helpers ---
    def mint(self, address: str, amount: int) -> None:
        address = checksum_address(address)
        self.asset.balances[address] = self.asset.balances.get(address, 0) + amount

    def asset_balance(self, address: str) -> int:
        return self.asset.balances.get(checksum_address(address), 0)

    # --- Ledger ---
    async def submit(self, intent: TxIntent) -> bytes:
        async with self._lock:
            handler = self._handlers().get(type(intent))
            if handler is None:
                raise LedgerRevert(f"unsupported call {type(intent).__name__}")
            try:
                logs = handler(intent)
            except ProtocolViolation as exc:
                raise LedgerRevert(exc.code) from exc

            self._tx_count += 1
            tx_hash = keccak(b"memory-ledger-tx" + self._tx_count.to_bytes(8, "big"))
            self._receipts[tx_hash] = Receipt(
                tx_hash=tx_hash,
                status=1,
                logs=tuple(logs),
                block_number=self._tx_count,
            )
            logger.info("executed %s from %s as tx %s", type(intent).__name__, intent.sender, tx_hash.hex())
            return tx_hash

    async def wait(self, tx_hash: bytes) -> Receipt:
        receipt = self._receipts.get(bytes(tx_hash))
        if receipt is None:
            raise TransportFailure(f"unknown transaction {bytes(tx_hash).hex()}")
        return receipt

    async def read(self, query: LedgerQuery) -> Any:
        if isinstance(query, PlayerBalance):
            return self.balances.get(query.address, 0)
        if isinstance(query, PermitNonce):
            return self.asset.nonces.get(query.owner, 0)
        if isinstance(query, GetMatch):
            return self._match(query.match_id)
        if isinstance(query, MatchWinner):
            return self._match(query.match_id).winner or ZERO_ADDRESS
        raise LedgerRevert(f"unsupported query {type(query).__name__}")

    # --- Contract rules ---
    def _handlers(self) -> dict[type, Callable[[Any], list[LogEntry]]]:
        return {
            DepositWithPermit: self._deposit_with_permit,
            Withdraw: self._withdraw,
            CreateMatch: self._create_match,
            JoinMatch: self._join_match,
            RevealMove: self._reveal_move,
            ResolveMatch: self._resolve_match,
        }

    def _deposit_with_permit(self, intent: DepositWithPermit) -> list[LogEntry]:
        owner = intent.sender
        if intent.deadline < int(self._clock()):
            raise LedgerRevert("permit is expired")

        # The asset rebuilds the permit with the owner's *current* nonce, so a
        # replayed or stale signature recovers to some other address.
        nonce = self.asset.nonces.get(owner, 0)
        permit = PermitAuthorization(
            owner=owner,
            spender=self.game_address,
            value=intent.amount,
            nonce=nonce,
            deadline=intent.deadline,
        )
        try:
            recovered = recover_permit_signer(self.permit_domain, permit, intent.v, intent.r, intent.s)
        except (BadSignature, KeyValidationError, ValueError) as exc:
            raise LedgerRevert("invalid signature") from exc
        if recovered != owner:
            raise LedgerRevert("invalid signature")

        held = self.asset.balances.get(owner, 0)
        if held < intent.amount:
            raise LedgerRevert("transfer amount exceeds balance")

        self.asset.nonces[owner] = nonce + 1
        self.asset.balances[owner] = held - intent.amount
        self._credit(owner, intent.amount)
        return [self._log(DEPOSITED, [owner], [intent.amount])]

    def _withdraw(self, intent: Withdraw) -> list[LogEntry]:
        held = self.balances.get(intent.sender, 0)
        if held < intent.amount:
            raise LedgerRevert("insufficient balance")
        self.balances[intent.sender] = held - intent.amount
        self.asset.balances[intent.sender] = self.asset.balances.get(intent.sender, 0) + intent.amount
        return [self._log(WITHDRAWN, [intent.sender], [intent.amount])]

    def _create_match(self, intent: CreateMatch) -> list[LogEntry]:
        match_id = self.store.next_match_id
        record = match_machine.create(match_id, intent.sender, intent.wager, intent.commitment)
        self._debit(intent.sender, intent.wager)
        self.store.matches[match_id] = record
        self.store.next_match_id += 1
        return [self._log(MATCH_CREATED, [match_id, intent.sender], [intent.wager])]

    def _join_match(self, intent: JoinMatch) -> list[LogEntry]:
        record = self._match(intent.match_id)
        joined = match_machine.join(record, intent.sender, intent.wager, intent.commitment)
        self._debit(intent.sender, intent.wager)
        self.store.matches[intent.match_id] = joined
        return [self._log(MATCH_JOINED, [intent.match_id, intent.sender], [])]

    def _reveal_move(self, intent: RevealMove) -> list[LogEntry]:
        record = self._match(intent.match_id)
        revealed = match_machine.reveal(record, intent.sender, intent.move, intent.salt, self.scheme)
        self.store.matches[intent.match_id] = revealed
        return [self._log(MOVE_REVEALED, [intent.match_id, intent.sender], [int(intent.move)])]

    def _resolve_match(self, intent: ResolveMatch) -> list[LogEntry]:
        record = self._match(intent.match_id)
        resolved, settlement = match_machine.resolve(record)
        for address, amount in settlement.payouts.items():
            self._credit(address, amount)
        self.store.matches[intent.match_id] = resolved
        return [self._log(MATCH_RESOLVED, [intent.match_id, settlement.winner or ZERO_ADDRESS], [])]

    # --- Helpers ---
    def _match(self, match_id: int) -> MatchRecord:
        record = self.store.matches.get(match_id)
        if record is None:
            raise LedgerRevert("match does not exist")
        return record

    def _credit(self, address: str, amount: int) -> None:
        self.balances[address] = self.balances.get(address, 0) + amount

    def _debit(self, address: str, amount: int) -> None:
        held = self.balances.get(address, 0)
        if held < amount:
            raise LedgerRevert("insufficient balance")
        self.balances[address] = held - amount

    def _log(self, schema: EventSchema, indexed: list[Any], data: list[Any]) -> LogEntry:
        indexed_inputs = [i for i in schema.inputs if i.indexed]
        plain_inputs = [i for i in schema.inputs if not i.indexed]
        topics = [schema.topic]
        topics += [abi_encode([i.type], [value]) for i, value in zip(indexed_inputs, indexed)]
        payload = abi_encode([i.type for i in plain_inputs], data) if plain_inputs else b""
        return LogEntry(address=self.game_address, topics=tuple(topics), data=payload)
