from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping

from commit_reveal import DEFAULT_SCHEME, CommitScheme, parse_scheme
from errors import ValidationError
from permit import PERMIT_TTL_SECONDS, PermitDomain
from protocol import checksum_address

SEPOLIA_CHAIN_ID = 11155111


@dataclass(frozen=True)
class DeploymentConfig:
    """Everything that must match the deployed contracts exactly."""

    game_address: str
    asset_address: str
    chain_id: int = SEPOLIA_CHAIN_ID
    asset_name: str = "USD Coin"
    asset_version: str = "1"
    asset_decimals: int = 6
    commit_scheme: CommitScheme = DEFAULT_SCHEME
    permit_ttl: int = PERMIT_TTL_SECONDS
    rpc_url: str | None = None
    receipt_timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "game_address", checksum_address(self.game_address, "game_address"))
        object.__setattr__(self, "asset_address", checksum_address(self.asset_address, "asset_address"))
        object.__setattr__(self, "commit_scheme", parse_scheme(self.commit_scheme))
        if not 0 <= self.asset_decimals <= 36:
            raise ValidationError(f"asset decimals out of range: {self.asset_decimals}")
        if self.permit_ttl <= 0:
            raise ValidationError("permit ttl must be positive")

    @property
    def permit_domain(self) -> PermitDomain:
        return PermitDomain(
            name=self.asset_name,
            version=self.asset_version,
            chain_id=self.chain_id,
            verifying_contract=self.asset_address,
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "DeploymentConfig":
        env = os.environ if env is None else env
        missing = [k for k in ("RPS_GAME_ADDRESS", "RPS_ASSET_ADDRESS") if not env.get(k)]
        if missing:
            raise ValidationError("missing configuration: " + ", ".join(missing))
        return cls(
            game_address=env["RPS_GAME_ADDRESS"],
            asset_address=env["RPS_ASSET_ADDRESS"],
            chain_id=_int(env, "RPS_CHAIN_ID", SEPOLIA_CHAIN_ID),
            asset_name=env.get("RPS_ASSET_NAME", "USD Coin"),
            asset_version=env.get("RPS_ASSET_VERSION", "1"),
            asset_decimals=_int(env, "RPS_ASSET_DECIMALS", 6),
            commit_scheme=env.get("RPS_COMMIT_SCHEME", DEFAULT_SCHEME.value),
            permit_ttl=_int(env, "RPS_PERMIT_TTL", PERMIT_TTL_SECONDS),
            rpc_url=env.get("RPS_RPC_URL") or None,
            receipt_timeout=_float(env, "RPS_RECEIPT_TIMEOUT"),
        )


def parse_amount(text: str, decimals: int) -> int:
    """'1.5' with 6 decimals -> 1500000. Rejects negatives and excess precision."""
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation:
        raise ValidationError(f"invalid amount: {text!r}") from None
    if not value.is_finite() or value < 0:
        raise ValidationError(f"invalid amount: {text!r}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"amount {text!r} has more than {decimals} decimal places")
    return int(scaled)


def format_amount(amount: int, decimals: int) -> str:
    value = Decimal(amount).scaleb(-decimals)
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a number of seconds, got {raw!r}") from None
    if not value > 0:
        raise ValidationError(f"{key} must be positive, got {raw!r}")
    return value
