from __future__ import annotations

import abc
import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount

from errors import TransportFailure
from permit import EIP712_DOMAIN_TYPE

logger = logging.getLogger(__name__)


class Signer(abc.ABC):
    """Holds key material. Any call may raise SignerRejection if the operator declines."""

    @abc.abstractmethod
    async def request_addresses(self) -> list[str]:
        ...

    @abc.abstractmethod
    async def sign_typed_data(
        self,
        domain: dict[str, Any],
        types: dict[str, list[dict[str, str]]],
        primary_type: str,
        message: dict[str, Any],
    ) -> bytes:
        ...

    @abc.abstractmethod
    async def send_transaction(self, tx: dict[str, Any]) -> bytes:
        ...


class LocalAccountSigner(Signer):
    """Signs with an in-process private key; broadcasts through ``w3`` when given one."""

    def __init__(self, account: LocalAccount, w3=None) -> None:
        self._account = account
        self._w3 = w3

    @classmethod
    def from_key(cls, private_key: str, w3=None) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key), w3=w3)

    @property
    def address(self) -> str:
        return self._account.address

    async def request_addresses(self) -> list[str]:
        return [self._account.address]

    async def sign_typed_data(self, domain, types, primary_type, message) -> bytes:
        full_message = {
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **types},
            "primaryType": primary_type,
            "domain": domain,
            "message": message,
        }
        signed = self._account.sign_message(encode_typed_data(full_message=full_message))
        return bytes(signed.signature)

    async def send_transaction(self, tx: dict[str, Any]) -> bytes:
        if self._w3 is None:
            raise TransportFailure("signer has no connection to broadcast transactions")
        tx = dict(tx)
        tx.setdefault("from", self._account.address)
        if "nonce" not in tx:
            tx["nonce"] = await self._w3.eth.get_transaction_count(self._account.address, "pending")
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("broadcast tx %s from %s", bytes(tx_hash).hex(), self._account.address)
        return bytes(tx_hash)
