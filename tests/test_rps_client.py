from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from eth_account import Account
from web3.exceptions import BadFunctionCallOutput

ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "src" / "app"
sys.path.insert(0, str(APP_DIR))

import rps_client  # type: ignore[import-not-found]  # noqa: E402
from errors import (  # type: ignore[import-not-found]  # noqa: E402
    ProtocolViolation,
    SignerRejection,
    StaleAuthorization,
    ValidationError,
)
from ledger import DecodeKind  # type: ignore[import-not-found]  # noqa: E402
from match_machine import MatchPhase  # type: ignore[import-not-found]  # noqa: E402
from memory_ledger import InMemoryLedger  # type: ignore[import-not-found]  # noqa: E402
from protocol import GetMatch, MatchWinner, Move, PermitNonce  # type: ignore[import-not-found]  # noqa: E402
from settings import DeploymentConfig  # type: ignore[import-not-found]  # noqa: E402
from signers import LocalAccountSigner  # type: ignore[import-not-found]  # noqa: E402

CREATOR_KEY = "0x" + "a1" * 32
OPPONENT_KEY = "0x" + "b2" * 32
GAME = "0x6666666666666666666666666666666666666666"
ASSET = "0x5555555555555555555555555555555555555555"
NOW = 1_700_000_000


def _config(**overrides) -> DeploymentConfig:
    return DeploymentConfig(game_address=GAME, asset_address=ASSET, chain_id=31337, **overrides)


def _ledger(config: DeploymentConfig, cls=InMemoryLedger, clock=lambda: NOW) -> InMemoryLedger:
    return cls(
        game_address=config.game_address,
        permit_domain=config.permit_domain,
        scheme=config.commit_scheme,
        clock=clock,
    )


async def _session(ledger, config, key: str, signer=None, clock=lambda: NOW) -> rps_client.Session:
    signer = signer or LocalAccountSigner.from_key(key)
    return await rps_client.connect(signer, ledger, config, clock=clock)


async def _players(ledger, config, stake: int = 10):
    creator = await _session(ledger, config, CREATOR_KEY)
    opponent = await _session(ledger, config, OPPONENT_KEY)
    for session in (creator, opponent):
        ledger.mint(session.account, 100)
        await rps_client.deposit(session, stake)
    return creator, opponent


class DecliningSigner(LocalAccountSigner):
    async def sign_typed_data(self, domain, types, primary_type, message) -> bytes:
        raise SignerRejection("user rejected the request")


class NoAccountSigner(LocalAccountSigner):
    async def request_addresses(self) -> list[str]:
        return []


class GatedSigner(LocalAccountSigner):
    def __init__(self, account, gate: asyncio.Event) -> None:
        super().__init__(account)
        self.gate = gate

    async def sign_typed_data(self, domain, types, primary_type, message) -> bytes:
        await self.gate.wait()
        return await super().sign_typed_data(domain, types, primary_type, message)


class StaleNonceLedger(InMemoryLedger):
    # Serves a nonce that is always one behind after the first deposit.
    async def read(self, query):
        if isinstance(query, PermitNonce):
            return 0
        return await super().read(query)


def test_scenario_creator_wins() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)

        created = await rps_client.create_match(creator, 10, Move.ROCK, "saltA")
        await rps_client.join_match(opponent, created.match_id, 10, Move.SCISSORS, "saltB")
        await rps_client.reveal_move(creator, created.match_id, Move.ROCK, "saltA")
        await rps_client.reveal_move(opponent, created.match_id, "scissors", "saltB")
        status = await rps_client.resolve_match(opponent, created.match_id)
        balances = (
            await rps_client.get_balance(creator),
            await rps_client.get_balance(opponent),
        )
        return created, status, balances, creator.account

    created, status, balances, creator_account = asyncio.run(scenario())
    assert created.decode is DecodeKind.DECODED and created.match_id == 0
    assert status.phase is MatchPhase.RESOLVED and status.record.resolved
    assert status.outcome == "player1_win"
    assert status.winner == creator_account
    # Each deposited 10 and staked 10; the creator collects the pool of 20.
    assert balances == (20, 0)


def test_scenario_draw_returns_stakes() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, Move.PAPER, "saltA")
        await rps_client.join_match(opponent, created.match_id, 10, Move.PAPER, "saltB")
        staked = (await rps_client.get_balance(creator), await rps_client.get_balance(opponent))
        await rps_client.reveal_move(creator, created.match_id, Move.PAPER, "saltA")
        await rps_client.reveal_move(opponent, created.match_id, Move.PAPER, "saltB")
        status = await rps_client.resolve_match(creator, created.match_id)
        final = (await rps_client.get_balance(creator), await rps_client.get_balance(opponent))
        return status, staked, final

    status, staked, final = asyncio.run(scenario())
    assert status.outcome == "draw" and status.winner is None and status.record.resolved
    assert staked == (0, 0)
    assert final == (10, 10)


def test_scenario_join_with_wrong_wager() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, Move.ROCK, "saltA")
        with pytest.raises(ProtocolViolation) as info:
            await rps_client.join_match(opponent, created.match_id, 5, Move.PAPER, "saltB")
        status = await rps_client.get_status(creator, created.match_id)
        return info.value, status, await rps_client.get_balance(opponent)

    violation, status, opponent_balance = asyncio.run(scenario())
    assert violation.code == "wager_mismatch"
    assert status.phase is MatchPhase.CREATED and status.record.opponent is None
    assert opponent_balance == 10


def test_scenario_reveal_with_wrong_salt() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, Move.ROCK, "saltA")
        await rps_client.join_match(opponent, created.match_id, 10, Move.SCISSORS, "saltB")
        before = await rps_client.get_status(creator, created.match_id)
        with pytest.raises(ProtocolViolation) as info:
            await rps_client.reveal_move(creator, created.match_id, Move.ROCK, "saltX")
        after = await rps_client.get_status(creator, created.match_id)
        return info.value, before, after

    violation, before, after = asyncio.run(scenario())
    assert violation.code == "commitment_mismatch"
    assert before.record == after.record
    assert after.phase is MatchPhase.JOINED and after.record.creator_move is None


def test_resolve_before_reveals_is_not_ready() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, Move.ROCK, "saltA")
        await rps_client.join_match(opponent, created.match_id, 10, Move.PAPER, "saltB")
        await rps_client.reveal_move(creator, created.match_id, Move.ROCK, "saltA")
        with pytest.raises(ProtocolViolation) as early:
            await rps_client.resolve_match(creator, created.match_id)
        await rps_client.reveal_move(opponent, created.match_id, Move.PAPER, "saltB")
        await rps_client.resolve_match(creator, created.match_id)
        with pytest.raises(ProtocolViolation) as late:
            await rps_client.resolve_match(creator, created.match_id)
        return early.value, late.value

    early, late = asyncio.run(scenario())
    assert early.code == "not_ready"
    assert late.code == "already_resolved"


def test_string_scheme_end_to_end() -> None:
    async def scenario():
        config = _config(commit_scheme="string-string")
        ledger = _ledger(config)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, "rock", "saltA")
        await rps_client.join_match(opponent, str(created.match_id), 10, "paper", "saltB")
        await rps_client.reveal_move(creator, created.match_id, "rock", "saltA")
        await rps_client.reveal_move(opponent, created.match_id, "paper", "saltB")
        return await rps_client.resolve_match(creator, created.match_id), opponent.account

    status, opponent_account = asyncio.run(scenario())
    assert status.winner == opponent_account


def test_validation_happens_before_the_ledger() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, _ = await _players(ledger, config)
        for call in (
            rps_client.create_match(creator, 10, Move.ROCK, "   "),
            rps_client.create_match(creator, 0, Move.ROCK, "salt"),
            rps_client.create_match(creator, 10, "lizard", "salt"),
            rps_client.join_match(creator, "abc", 10, Move.ROCK, "salt"),
            rps_client.reveal_move(creator, -1, Move.ROCK, "salt"),
            rps_client.withdraw(creator, -5),
            rps_client.deposit(creator, 0),
        ):
            with pytest.raises(ValidationError):
                await call
        return ledger

    ledger = asyncio.run(scenario())
    assert ledger.store.matches == {}


def test_stale_nonce_is_retryable() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config, cls=StaleNonceLedger)
        session = await _session(ledger, config, CREATOR_KEY)
        ledger.mint(session.account, 100)
        await rps_client.deposit(session, 10)
        with pytest.raises(StaleAuthorization) as info:
            await rps_client.deposit(session, 10)
        outcome = await rps_client.settle("deposit", rps_client.deposit(session, 10))
        return info.value, outcome, await rps_client.get_balance(session)

    failure, outcome, balance = asyncio.run(scenario())
    assert failure.retryable
    assert not outcome.ok and outcome.category == "stale_authorization" and outcome.retryable
    assert balance == 10


def test_expired_permit_is_not_submitted() -> None:
    ticks = iter([NOW, NOW + 1801])

    async def scenario():
        config = _config()
        ledger = _ledger(config)
        session = await _session(ledger, config, CREATOR_KEY, clock=lambda: next(ticks))
        ledger.mint(session.account, 100)
        with pytest.raises(StaleAuthorization):
            await rps_client.deposit(session, 10)
        return ledger, session

    ledger, session = asyncio.run(scenario())
    assert ledger.asset.nonces.get(session.account, 0) == 0
    assert ledger.asset_balance(session.account) == 100


def test_ledger_side_expiry_is_stale_authorization() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config, clock=lambda: NOW + 7200)
        session = await _session(ledger, config, CREATOR_KEY)
        ledger.mint(session.account, 100)
        with pytest.raises(StaleAuthorization):
            await rps_client.deposit(session, 10)

    asyncio.run(scenario())


def test_signer_rejection() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        signer = DecliningSigner(Account.from_key(CREATOR_KEY))
        session = await _session(ledger, config, CREATOR_KEY, signer=signer)
        ledger.mint(session.account, 100)
        outcome = await rps_client.settle("deposit", rps_client.deposit(session, 10))
        with pytest.raises(SignerRejection):
            await _session(ledger, config, CREATOR_KEY, signer=NoAccountSigner(Account.from_key(CREATOR_KEY)))
        return outcome

    outcome = asyncio.run(scenario())
    assert not outcome.ok
    assert outcome.category == "signer_rejection"
    assert outcome.retryable
    assert "declined" in outcome.message


def test_action_is_single_flight() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        gate = asyncio.Event()
        session = await _session(
            ledger, config, CREATOR_KEY, signer=GatedSigner(Account.from_key(CREATOR_KEY), gate)
        )
        ledger.mint(session.account, 100)
        first = asyncio.create_task(rps_client.deposit(session, 5))
        await asyncio.sleep(0)
        with pytest.raises(ValidationError):
            await rps_client.deposit(session, 5)
        # A different action is not blocked.
        assert await rps_client.get_balance(session) == 0
        gate.set()
        await first
        await rps_client.deposit(session, 5)
        return await rps_client.get_balance(session)

    assert asyncio.run(scenario()) == 10


def test_disconnected_session_refuses_actions() -> None:
    async def scenario():
        config = _config()
        session = await _session(_ledger(config), config, CREATOR_KEY)
        rps_client.disconnect(session)
        with pytest.raises(ValidationError):
            await rps_client.get_balance(session)

    asyncio.run(scenario())


def test_settle_reports_success_and_protocol_violations() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config)
        creator, _ = await _players(ledger, config)
        ok = await rps_client.settle("create", rps_client.create_match(creator, 10, Move.ROCK, "saltA"))
        missing = await rps_client.settle("status", rps_client.get_status(creator, 99))
        return ok, missing

    ok, missing = asyncio.run(scenario())
    assert ok.ok and ok.value.match_id == 0
    assert not missing.ok
    assert missing.category == "protocol_violation" and not missing.retryable
    assert missing.message == "No match exists with that id."


class WinnerMappingLedger(InMemoryLedger):
    # Records reads and can report a winner mapping that differs from the record.
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.queries = []
        self.mapped_winner = None

    async def read(self, query):
        self.queries.append(type(query))
        if isinstance(query, MatchWinner) and self.mapped_winner is not None:
            return self.mapped_winner
        return await super().read(query)


def test_status_of_resolved_match_uses_the_winner_mapping() -> None:
    async def scenario():
        config = _config()
        ledger = _ledger(config, cls=WinnerMappingLedger)
        creator, opponent = await _players(ledger, config)
        created = await rps_client.create_match(creator, 10, Move.ROCK, "saltA")
        await rps_client.join_match(opponent, created.match_id, 10, Move.SCISSORS, "saltB")
        ledger.queries.clear()
        open_status = await rps_client.get_status(creator, created.match_id)
        open_reads = list(ledger.queries)

        await rps_client.reveal_move(creator, created.match_id, Move.ROCK, "saltA")
        await rps_client.reveal_move(opponent, created.match_id, Move.SCISSORS, "saltB")
        await rps_client.resolve_match(creator, created.match_id)
        ledger.mapped_winner = opponent.account.lower()
        resolved = await rps_client.get_status(creator, created.match_id)
        return open_status, open_reads, resolved, opponent.account

    open_status, open_reads, resolved, opponent_account = asyncio.run(scenario())
    assert open_status.winner is None
    assert open_reads == [GetMatch]
    assert resolved.winner == opponent_account
    assert resolved.record.winner == opponent_account


def test_settle_types_untyped_library_errors() -> None:
    async def broken():
        raise BadFunctionCallOutput("Could not decode contract function call to getMatch")

    outcome = asyncio.run(rps_client.settle("status", broken()))
    assert not outcome.ok
    assert outcome.category == "transport_failure"
    assert outcome.retryable
    assert "BadFunctionCallOutput" in outcome.message
