"""EIP-2612 permit construction for gasless deposits.

A permit is an EIP-712 typed message in which ``owner`` allows ``spender`` to
move ``value`` units of the funding asset. The asset contract checks it
against the owner's current ``nonces(owner)`` and rejects it after
``deadline``, so a permit can be consumed exactly once. The builder never
signs; signing is delegated to the session's signer.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Final

from eth_account import Account
from eth_account.messages import encode_typed_data

from errors import ValidationError
from protocol import checksum_address

logger = logging.getLogger(__name__)

PERMIT_TTL_SECONDS: Final[int] = 30 * 60
PRIMARY_TYPE: Final[str] = "Permit"

EIP712_DOMAIN_TYPE: Final[list[dict[str, str]]] = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

PERMIT_TYPES: Final[dict[str, list[dict[str, str]]]] = {
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class PermitDomain:
    # name/version must match the funding asset exactly or every signature is rejected.
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self) -> None:
        if not self.name or not self.version:
            raise ValidationError("permit domain needs the asset name and version")
        if isinstance(self.chain_id, bool) or not isinstance(self.chain_id, int) or self.chain_id <= 0:
            raise ValidationError(f"invalid chain id: {self.chain_id!r}")
        object.__setattr__(
            self, "verifying_contract", checksum_address(self.verifying_contract, "verifying_contract")
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class PermitAuthorization:
    owner: str
    spender: str
    value: int
    nonce: int
    deadline: int

    def message(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "spender": self.spender,
            "value": self.value,
            "nonce": self.nonce,
            "deadline": self.deadline,
        }

    def typed_data(self, domain: PermitDomain) -> dict[str, Any]:
        return {
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **PERMIT_TYPES},
            "primaryType": PRIMARY_TYPE,
            "domain": domain.as_dict(),
            "message": self.message(),
        }

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.deadline <= int(now)


@dataclass(frozen=True)
class SignedPermit:
    permit: PermitAuthorization
    v: int
    r: bytes
    s: bytes


def build_permit(
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    *,
    ttl: int = PERMIT_TTL_SECONDS,
    now: float | None = None,
) -> PermitAuthorization:
    """Assemble an unsigned permit. ``nonce`` must be freshly read from the asset."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"permit value must be a positive integer, got {value!r}")
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
        raise ValidationError(f"permit nonce must be a non-negative integer, got {nonce!r}")
    if ttl <= 0:
        raise ValidationError("permit ttl must be positive")
    now = time.time() if now is None else now
    return PermitAuthorization(
        owner=checksum_address(owner, "owner"),
        spender=checksum_address(spender, "spender"),
        value=value,
        nonce=nonce,
        deadline=int(now) + ttl,
    )


def split_signature(signature: bytes | str) -> tuple[int, bytes, bytes]:
    if isinstance(signature, str):
        text = signature[2:] if signature.startswith(("0x", "0X")) else signature
        try:
            signature = bytes.fromhex(text)
        except ValueError:
            raise ValidationError("signature is not valid hex") from None
    signature = bytes(signature)
    if len(signature) != 65:
        raise ValidationError(f"signature must be 65 bytes, got {len(signature)}")
    r, s, v = signature[:32], signature[32:64], signature[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise ValidationError(f"signature has invalid recovery id {signature[64]}")
    return v, r, s


async def sign_permit(signer, domain: PermitDomain, permit: PermitAuthorization) -> SignedPermit:
    logger.debug("requesting permit signature owner=%s nonce=%d", permit.owner, permit.nonce)
    signature = await signer.sign_typed_data(
        domain.as_dict(), PERMIT_TYPES, PRIMARY_TYPE, permit.message()
    )
    v, r, s = split_signature(signature)
    return SignedPermit(permit=permit, v=v, r=r, s=s)


def recover_permit_signer(domain: PermitDomain, permit: PermitAuthorization, v: int, r: bytes, s: bytes) -> str:
    signable = encode_typed_data(full_message=permit.typed_data(domain))
    return Account.recover_message(signable, vrs=(v, r, s))
