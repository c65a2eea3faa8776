"""
Treasury identity — the secrets boundary.

Holds the treasury keypair and signs outbound transactions. Callers pass
instructions and a blockhash and get back serialized bytes; they never
see key material. The identity is built once at startup and injected.

Accepted secret formats:
    - JSON byte array, 64 entries ("[12, 34, ...]") as exported by the
      Solana CLI.
    - Base58-encoded 64-byte secret key.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from treasury_bridge.errors import ConfigurationError


@dataclass(frozen=True)
class SignedTransaction:
    """A signed, serialized transaction ready for submission.

    Attributes:
        signature: Base58 fee-payer signature. This is the transaction id.
        payload: Wire-format transaction bytes.
    """

    signature: str
    payload: bytes


class TreasuryIdentity:
    """Signing credential and public address of the treasury.

    Immutable after construction and safe to share across concurrent
    settlements: signing does not mutate the keypair.
    """

    __slots__ = ("_keypair", "_pubkey")

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair
        self._pubkey = keypair.pubkey()

    @classmethod
    def from_secret(cls, raw: str | None) -> TreasuryIdentity:
        """Load the identity from configured secret material.

        Raises:
            ConfigurationError: If the secret is missing or malformed.
                The message never echoes the secret.
        """
        if raw is None or not raw.strip():
            raise ConfigurationError("missing TREASURY_PRIVATE_KEY")
        text = raw.strip()
        try:
            if text.startswith("["):
                secret = bytes(json.loads(text))
                keypair = Keypair.from_bytes(secret)
            else:
                keypair = Keypair.from_base58_string(text)
        except Exception as exc:
            raise ConfigurationError(
                f"TREASURY_PRIVATE_KEY is malformed ({type(exc).__name__})"
            ) from None
        return cls(keypair)

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    @property
    def address(self) -> str:
        """Base58 treasury address. Safe for logging."""
        return str(self._pubkey)

    def sign(self, instructions: Sequence[Instruction], blockhash: str) -> SignedTransaction:
        """Build and sign a transaction with the treasury as fee payer.

        Args:
            instructions: Instructions to include, in order.
            blockhash: Recent blockhash from a fresh checkpoint.

        Raises:
            ValueError: If ``instructions`` is empty or the blockhash is malformed.
        """
        if not instructions:
            raise ValueError("instructions must be non-empty")
        recent = Hash.from_string(blockhash)
        message = Message.new_with_blockhash(list(instructions), self._pubkey, recent)
        tx = Transaction([self._keypair], message, recent)
        return SignedTransaction(signature=str(tx.signatures[0]), payload=bytes(tx))

    def __repr__(self) -> str:
        return f"TreasuryIdentity(address={self.address!r})"
