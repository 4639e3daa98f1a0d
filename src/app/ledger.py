from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from protocol import LedgerQuery, TxIntent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: tuple[bytes, ...]
    data: bytes = b""


@dataclass(frozen=True)
class Receipt:
    tx_hash: bytes
    status: int
    logs: tuple[LogEntry, ...] = ()
    block_number: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSchema:
    name: str
    inputs: tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> bytes:
        return keccak(text=self.signature)


MATCH_CREATED = EventSchema(
    "MatchCreated",
    (
        EventInput("matchId", "uint256", indexed=True),
        EventInput("creator", "address", indexed=True),
        EventInput("wager", "uint256"),
    ),
)
MATCH_JOINED = EventSchema(
    "MatchJoined",
    (
        EventInput("matchId", "uint256", indexed=True),
        EventInput("opponent", "address", indexed=True),
    ),
)
MOVE_REVEALED = EventSchema(
    "MoveRevealed",
    (
        EventInput("matchId", "uint256", indexed=True),
        EventInput("player", "address", indexed=True),
        EventInput("move", "uint8"),
    ),
)
MATCH_RESOLVED = EventSchema(
    "MatchResolved",
    (
        EventInput("matchId", "uint256", indexed=True),
        EventInput("winner", "address", indexed=True),
    ),
)
DEPOSITED = EventSchema(
    "Deposited",
    (EventInput("player", "address", indexed=True), EventInput("amount", "uint256")),
)
WITHDRAWN = EventSchema(
    "Withdrawn",
    (EventInput("player", "address", indexed=True), EventInput("amount", "uint256")),
)


def decode_log(log: LogEntry, schema: EventSchema) -> dict[str, Any] | None:
    """Decode ``log`` as ``schema``; None when the log is some other event."""
    indexed = [i for i in schema.inputs if i.indexed]
    plain = [i for i in schema.inputs if not i.indexed]
    if not log.topics or log.topics[0] != schema.topic or len(log.topics) != len(indexed) + 1:
        return None
    try:
        args: dict[str, Any] = {}
        for item, topic in zip(indexed, log.topics[1:]):
            args[item.name] = abi_decode([item.type], topic)[0]
        if plain:
            values = abi_decode([i.type for i in plain], log.data)
            args.update({i.name: v for i, v in zip(plain, values)})
    except (DecodingError, ValueError, TypeError):
        return None
    for item in schema.inputs:
        if item.type == "address":
            args[item.name] = to_checksum_address(args[item.name])
    return args


class Ledger(abc.ABC):
    """The four capabilities the client needs from the external ledger.

    Implementations do not retry. Reverts raise ``LedgerRevert``; an
    unreachable ledger raises ``TransportFailure``.
    """

    @abc.abstractmethod
    async def submit(self, intent: TxIntent) -> bytes:
        ...

    @abc.abstractmethod
    async def wait(self, tx_hash: bytes) -> Receipt:
        ...

    @abc.abstractmethod
    async def read(self, query: LedgerQuery) -> Any:
        ...

    async def close(self) -> None:
        """Release transport resources. Nothing to release by default."""

    def decode_events(
        self,
        receipt: Receipt,
        schema: EventSchema,
        address: str | None = None,
    ) -> list[dict[str, Any]]:
        events = []
        for log in receipt.logs:
            if address is not None and log.address.lower() != address.lower():
                continue
            decoded = decode_log(log, schema)
            if decoded is not None:
                events.append(decoded)
        return events


class DecodeKind(str, Enum):
    DECODED = "decoded"
    RAW_FALLBACK = "raw_fallback"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class MatchIdDecode:
    kind: DecodeKind
    match_id: int | None = None


def decode_match_id(ledger: Ledger, receipt: Receipt, contract_address: str) -> MatchIdDecode:
    # Stage 1: schema decode of MatchCreated.
    events = ledger.decode_events(receipt, MATCH_CREATED, contract_address)
    if events:
        return MatchIdDecode(DecodeKind.DECODED, int(events[0]["matchId"]))

    # Stage 2: first indexed topic of any log the game contract emitted.
    for log in receipt.logs:
        if log.address.lower() != contract_address.lower() or len(log.topics) < 2:
            continue
        match_id = int.from_bytes(log.topics[1], "big")
        logger.warning(
            "MatchCreated not decodable in tx %s; using raw topic match_id=%d",
            receipt.tx_hash.hex(),
            match_id,
        )
        return MatchIdDecode(DecodeKind.RAW_FALLBACK, match_id)

    logger.warning("no match id found in logs of tx %s", receipt.tx_hash.hex())
    return MatchIdDecode(DecodeKind.UNRECOGNIZED)
