from __future__ import annotations

import argparse
import asyncio
import logging
import os

import rps_client
from commit_reveal import DEFAULT_SCHEME, compute_commitment, generate_salt, parse_scheme
from errors import RpsError, ValidationError
from match_machine import MatchPhase
from protocol import Move, parse_move
from rps_client import ActionOutcome, MatchCreation, MatchStatus
from settings import DeploymentConfig, format_amount, parse_amount
from signers import LocalAccountSigner
from web3_ledger import Web3Ledger, connect_web3


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="rps")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log ledger traffic")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("salt", help="Print a fresh random salt")

    commit = sub.add_parser("commit", help="Compute a commitment offline")
    commit.add_argument("--move", required=True, help="rock|paper|scissors")
    commit.add_argument("--salt", required=True)
    commit.add_argument("--scheme", default=None, help="uint8-string|string-string (default: RPS_COMMIT_SCHEME)")

    balance = sub.add_parser("balance", help="Show an in-game balance")
    balance.add_argument("--address", default=None)

    deposit = sub.add_parser("deposit", help="Deposit with a signed permit (no approve tx)")
    deposit.add_argument("amount", help="Amount in asset units, e.g. 2.5")

    withdraw = sub.add_parser("withdraw", help="Withdraw to your wallet")
    withdraw.add_argument("amount")

    create = sub.add_parser("create", help="Create a match with a committed move")
    create.add_argument("--wager", required=True)
    create.add_argument("--move", default=None, help="rock|paper|scissors (if not provided, will prompt)")
    create.add_argument("--salt", default=None, help="Secret salt (generated if omitted)")

    join = sub.add_parser("join", help="Join an open match")
    join.add_argument("match_id")
    join.add_argument("--wager", required=True)
    join.add_argument("--move", default=None, help="rock|paper|scissors (if not provided, will prompt)")
    join.add_argument("--salt", default=None, help="Secret salt (generated if omitted)")

    reveal = sub.add_parser("reveal", help="Reveal your move")
    reveal.add_argument("match_id")
    reveal.add_argument("--move", required=True)
    reveal.add_argument("--salt", required=True)

    resolve = sub.add_parser("resolve", help="Resolve a match once both moves are revealed")
    resolve.add_argument("match_id")

    status = sub.add_parser("status", help="Show match state")
    status.add_argument("match_id")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "salt":
            print(generate_salt())
            return 0
        if args.cmd == "commit":
            scheme = parse_scheme(args.scheme or os.environ.get("RPS_COMMIT_SCHEME", DEFAULT_SCHEME.value))
            print("0x" + compute_commitment(parse_move(args.move), args.salt, scheme).hex())
            return 0
        config = DeploymentConfig.from_env()
    except RpsError as err:
        raise SystemExit(rps_client.describe_failure(err))

    outcome = asyncio.run(_run(args, config))
    if not outcome.ok:
        print(f"❌ {outcome.action} failed [{outcome.category}]: {outcome.message}")
        return 1
    _show(outcome, config)
    return 0


async def _run(args: argparse.Namespace, config: DeploymentConfig) -> ActionOutcome:
    try:
        session = await _open_session(config)
    except RpsError as err:
        return ActionOutcome(action="connect", ok=False, category=err.category, message=rps_client.describe_failure(err))

    decimals = config.asset_decimals
    try:
        if args.cmd == "balance":
            return await rps_client.settle("balance", rps_client.get_balance(session, args.address))
        if args.cmd == "deposit":
            return await rps_client.settle("deposit", _deposit(session, args.amount, decimals))
        if args.cmd == "withdraw":
            return await rps_client.settle("withdraw", _withdraw(session, args.amount, decimals))
        if args.cmd == "create":
            move, salt = _move_and_salt(args)
            return await rps_client.settle("create", _create(session, args.wager, decimals, move, salt))
        if args.cmd == "join":
            move, salt = _move_and_salt(args)
            return await rps_client.settle("join", _join(session, args.match_id, args.wager, decimals, move, salt))
        if args.cmd == "reveal":
            return await rps_client.settle("reveal", rps_client.reveal_move(session, args.match_id, args.move, args.salt))
        if args.cmd == "resolve":
            return await rps_client.settle("resolve", rps_client.resolve_match(session, args.match_id))
        if args.cmd == "status":
            return await rps_client.settle("status", rps_client.get_status(session, args.match_id))
    except RpsError as err:
        return ActionOutcome(action=args.cmd, ok=False, category=err.category, message=rps_client.describe_failure(err))
    finally:
        rps_client.disconnect(session)
        await session.ledger.close()

    raise SystemExit("unhandled command")


async def _open_session(config: DeploymentConfig) -> rps_client.Session:
    if not config.rpc_url:
        raise ValidationError("RPS_RPC_URL is not set")
    key = os.environ.get("RPS_PRIVATE_KEY")
    if not key:
        raise ValidationError("RPS_PRIVATE_KEY is not set")
    w3 = connect_web3(config.rpc_url)
    signer = LocalAccountSigner.from_key(key, w3=w3)
    ledger = Web3Ledger(
        w3,
        game_address=config.game_address,
        asset_address=config.asset_address,
        signer=signer,
        scheme=config.commit_scheme,
        receipt_timeout=config.receipt_timeout,
    )
    try:
        return await rps_client.connect(signer, ledger, config)
    except RpsError:
        await ledger.close()
        raise


async def _deposit(session, amount: str, decimals: int) -> bytes:
    return await rps_client.deposit(session, parse_amount(amount, decimals))


async def _withdraw(session, amount: str, decimals: int) -> bytes:
    return await rps_client.withdraw(session, parse_amount(amount, decimals))


async def _create(session, wager: str, decimals: int, move: Move, salt: str) -> MatchCreation:
    return await rps_client.create_match(session, parse_amount(wager, decimals), move, salt)


async def _join(session, match_id: str, wager: str, decimals: int, move: Move, salt: str) -> bytes:
    return await rps_client.join_match(session, match_id, parse_amount(wager, decimals), move, salt)


def _move_and_salt(args: argparse.Namespace) -> tuple[Move, str]:
    move = parse_move(args.move) if args.move else _prompt_for_move()
    salt = args.salt
    if not salt:
        salt = generate_salt()
        print(f"🔑 Generated salt: {salt}")
        print("   Keep it (and your move) private: you need both to reveal.")
    return move, salt


def _prompt_for_move() -> Move:
    """Interactive prompt for the player's move."""
    while True:
        choice = input("Choose your move - (r)ock, (p)aper, (s)cissors: ").strip().lower()
        if choice in ("r", "rock", "p", "paper", "s", "scissors"):
            return parse_move(choice)
        print("❌ Invalid choice. Please enter r, p, or s.")


def _show(outcome: ActionOutcome, config: DeploymentConfig) -> None:
    value = outcome.value
    if isinstance(value, MatchCreation):
        if value.match_id is not None:
            print(f"Match created! Match ID: {value.match_id} - share this ID with your opponent.")
        else:
            print(f"Match created, but no match id was found in the logs. Transaction: 0x{value.tx_hash.hex()}")
        print(f"Commitment: 0x{value.commitment.hex()}")
    elif isinstance(value, MatchStatus):
        _show_status(value, config)
    elif isinstance(value, bytes):
        print(f"✅ {outcome.action} confirmed. Transaction: 0x{value.hex()}")
    elif isinstance(value, int):
        print(f"Balance: {format_amount(value, config.asset_decimals)}")


def _show_status(status: MatchStatus, config: DeploymentConfig) -> None:
    record = status.record
    print(f"\n{'='*60}")
    print(f"   Match {status.match_id}: {status.phase.value}")
    print(f"   Creator:  {record.creator}  move: {_label(record.creator_move)}")
    print(f"   Opponent: {record.opponent or '-'}  move: {_label(record.opponent_move)}")
    print(f"   Wager: {format_amount(record.wager, config.asset_decimals)}")
    if status.phase is MatchPhase.RESOLVED:
        if status.outcome == "draw":
            print("   Result: 🤝 DRAW (stakes returned)")
        else:
            print(f"   Result: 🎉 winner {status.winner}")
    print(f"{'='*60}\n")


def _label(move: Move | None) -> str:
    return move.label if move is not None else "hidden"


if __name__ == "__main__":
    raise SystemExit(main())
