from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import aiohttp
from eth_utils import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError

from commit_reveal import DEFAULT_SCHEME, CommitScheme, move_argument
from contract_abi import ASSET_ABI, MOVE_UNSET, game_abi
from errors import LedgerRevert, TransportFailure
from ledger import Ledger, LogEntry, Receipt
from match_machine import MatchRecord
from protocol import (
    CreateMatch,
    DepositWithPermit,
    GetMatch,
    JoinMatch,
    LedgerQuery,
    MatchWinner,
    Move,
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
_REVERT_PREFIX = "execution reverted:"


def connect_web3(rpc_url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(rpc_url))


class Web3Ledger(Ledger):
    """Ledger backed by the deployed game and asset contracts over JSON-RPC.

    Each submission is simulated with ``eth_call`` first so a revert is
    reported before the signer is asked for anything.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        game_address: str,
        asset_address: str,
        signer,
        scheme: CommitScheme = DEFAULT_SCHEME,
        receipt_timeout: float | None = None,
    ) -> None:
        self._w3 = w3
        self._signer = signer
        self._scheme = scheme
        self._receipt_timeout = receipt_timeout
        # Intent type per submitted tx, so a reverted receipt can be classified.
        self._pending: dict[bytes, type] = {}
        self.game_address = checksum_address(game_address, "game_address")
        self.asset_address = checksum_address(asset_address, "asset_address")
        self._game = w3.eth.contract(address=self.game_address, abi=game_abi(scheme))
        self._asset = w3.eth.contract(address=self.asset_address, abi=ASSET_ABI)

    async def submit(self, intent: TxIntent) -> bytes:
        fn = self._contract_call(intent)
        params = {"from": intent.sender}
        with _ledger_errors(f"submit {type(intent).__name__}"):
            await fn.call(params)
            tx = await fn.build_transaction(params)
            tx_hash = await self._signer.send_transaction(tx)
        tx_hash = bytes(tx_hash)
        self._pending[tx_hash] = type(intent)
        logger.info("submitted %s from %s as tx %s", type(intent).__name__, intent.sender, tx_hash.hex())
        return tx_hash

    async def wait(self, tx_hash: bytes) -> Receipt:
        with _ledger_errors("wait for receipt"):
            raw = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        receipt = _to_receipt(raw)
        intent_type = self._pending.pop(bytes(tx_hash), None)
        if not receipt.succeeded:
            if intent_type is DepositWithPermit:
                # Simulation passed, so the permit went stale before mining.
                raise LedgerRevert("permit nonce or deadline no longer valid at inclusion")
            raise LedgerRevert("transaction reverted")
        logger.info("tx %s confirmed in block %s", receipt.tx_hash.hex(), receipt.block_number)
        return receipt

    async def read(self, query: LedgerQuery) -> Any:
        logger.debug("read %r", query)
        with _ledger_errors(f"read {type(query).__name__}"):
            if isinstance(query, PlayerBalance):
                return await self._game.functions.getPlayerBalance(query.address).call()
            if isinstance(query, PermitNonce):
                return await self._asset.functions.nonces(query.owner).call()
            if isinstance(query, MatchWinner):
                return to_checksum_address(await self._game.functions.matchIdToWinner(query.match_id).call())
            if isinstance(query, GetMatch):
                values = await self._game.functions.getMatch(query.match_id).call()
                return record_from_values(query.match_id, values)
        raise LedgerRevert(f"unsupported query {type(query).__name__}")

    async def close(self) -> None:
        try:
            await self._w3.provider.disconnect()
        except (aiohttp.ClientError, OSError) as exc:
            logger.warning("closing the rpc provider failed: %s", exc)

    def _contract_call(self, intent: TxIntent):
        fns = self._game.functions
        if isinstance(intent, DepositWithPermit):
            return fns.depositWithPermit(intent.amount, intent.deadline, intent.v, intent.r, intent.s)
        if isinstance(intent, Withdraw):
            return fns.withdraw(intent.amount)
        if isinstance(intent, CreateMatch):
            return fns.createMatch(intent.wager, intent.commitment)
        if isinstance(intent, JoinMatch):
            # The contract takes the stake from the match itself; the wager is checked client-side.
            return fns.joinMatch(intent.match_id, intent.commitment)
        if isinstance(intent, RevealMove):
            return fns.revealMove(intent.match_id, move_argument(intent.move, self._scheme), intent.salt)
        if isinstance(intent, ResolveMatch):
            return fns.resolveMatch(intent.match_id)
        raise LedgerRevert(f"unsupported call {type(intent).__name__}")


def record_from_values(match_id: int, values: Sequence[Any]) -> MatchRecord:
    (
        creator,
        opponent,
        wager,
        creator_commitment,
        opponent_commitment,
        creator_move,
        opponent_move,
        winner,
        resolved,
    ) = values
    if _unset_address(creator):
        raise LedgerRevert("match does not exist")
    return MatchRecord(
        match_id=match_id,
        creator=to_checksum_address(creator),
        wager=int(wager),
        creator_commitment=bytes(creator_commitment),
        opponent=None if _unset_address(opponent) else to_checksum_address(opponent),
        opponent_commitment=bytes(opponent_commitment) if any(opponent_commitment) else None,
        creator_move=_decode_move(creator_move),
        opponent_move=_decode_move(opponent_move),
        winner=None if _unset_address(winner) else to_checksum_address(winner),
        resolved=bool(resolved),
    )


def _decode_move(value: int) -> Move | None:
    if value == MOVE_UNSET or value not in tuple(Move):
        return None
    return Move(value)


def _unset_address(value: str | None) -> bool:
    return not value or int(value, 16) == 0


def _to_receipt(raw: Any) -> Receipt:
    logs = tuple(
        LogEntry(
            address=to_checksum_address(log["address"]),
            topics=tuple(bytes(t) for t in log["topics"]),
            data=bytes(log["data"]),
        )
        for log in raw["logs"]
    )
    return Receipt(
        tx_hash=bytes(raw["transactionHash"]),
        status=int(raw["status"]),
        logs=logs,
        block_number=raw.get("blockNumber"),
    )


def _error_message(exc: Exception) -> str:
    return str(getattr(exc, "message", None) or exc)


def _revert_reason(exc: Exception) -> str:
    message = _error_message(exc)
    _, found, tail = message.partition(_REVERT_PREFIX)
    if found:
        message = tail
    return message.strip() or "reverted"


@contextmanager
def _ledger_errors(action: str) -> Iterator[None]:
    try:
        yield
    except ContractLogicError as exc:
        raise LedgerRevert(_revert_reason(exc)) from exc
    except (TimeExhausted, asyncio.TimeoutError) as exc:
        raise TransportFailure(f"{action}: timed out waiting for the ledger") from exc
    except Web3RPCError as exc:
        # Nodes differ in whether a simulated revert arrives as ContractLogicError.
        message = _error_message(exc)
        if _REVERT_PREFIX.rstrip(":") in message:
            raise LedgerRevert(_revert_reason(exc)) from exc
        raise TransportFailure(f"{action}: node rejected the request ({message})") from exc
    except Web3Exception as exc:
        raise TransportFailure(f"{action}: {type(exc).__name__}: {exc}") from exc
    except (aiohttp.ClientError, OSError) as exc:
        raise TransportFailure(f"{action}: ledger unreachable ({type(exc).__name__}: {exc})") from exc
