"""
Ledger client protocol — the network boundary.

Defines the interface the verifiers and the settlement executor depend
on, not a concrete implementation. This keeps them testable and keeps
HTTP out of business logic.

Concrete implementations:
    - SolanaJsonRpcClient (jsonrpc_client.py)
    - FakeLedgerClient (tests)

Instructions are parsed into a closed set of variants:
    - NativeTransfer — system-program transfer with lamports.
    - TokenTransfer  — token-program transfer / transferChecked.
    - OpaqueInstruction — anything else (not parsed, skipped by scans).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, Union, runtime_checkable


# =========================================================================
# Confirmation levels
# =========================================================================


class ConfirmationStatus(StrEnum):
    """Commitment level reported for a signature, weakest first."""

    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def is_confirmed(self) -> bool:
        """True for ``confirmed`` or ``finalized``."""
        return self in (ConfirmationStatus.CONFIRMED, ConfirmationStatus.FINALIZED)


# =========================================================================
# Instruction variants
# =========================================================================


@dataclass(frozen=True)
class NativeTransfer:
    """System-program transfer.

    ``lamports`` is None when the node reported a value that is not an
    integer; verifiers treat that as an invalid amount.
    """

    source: str
    destination: str
    lamports: int | None


@dataclass(frozen=True)
class TokenTransfer:
    """Token-program ``transfer`` or ``transferChecked``.

    Attributes:
        program_id: Token program that executed the instruction.
        source: Sending token account.
        destination: Receiving token account.
        authority: Owner or delegate that signed the transfer.
        raw_amount: Amount in smallest units. None if absent or malformed.
        mint: Mint address. Present only for ``transferChecked``.
        decimals: Precision. Present only for ``transferChecked``.
    """

    program_id: str
    source: str
    destination: str
    authority: str | None
    raw_amount: int | None
    mint: str | None = None
    decimals: int | None = None


@dataclass(frozen=True)
class OpaqueInstruction:
    program_id: str


Instruction = Union[NativeTransfer, TokenTransfer, OpaqueInstruction]


# =========================================================================
# Result types
# =========================================================================


@dataclass(frozen=True)
class TokenBalance:
    """One entry of a transaction's post-token-balance snapshot."""

    account_index: int
    mint: str
    owner: str | None
    raw_amount: int | None
    decimals: int | None


@dataclass(frozen=True)
class LedgerTransaction:
    """A fetched, parsed transaction.

    Attributes:
        signature: The transaction signature it was fetched by.
        slot: Slot the transaction landed in.
        failed: True if the ledger recorded an execution error.
        error: Raw error description when ``failed``.
        signers: Signer addresses in message order. The first one is
            the fee payer.
        instructions: Top-level instructions, in order.
        post_token_balances: Token balance snapshot after execution.
    """

    signature: str
    slot: int | None
    failed: bool
    signers: tuple[str, ...]
    instructions: tuple[Instruction, ...]
    post_token_balances: tuple[TokenBalance, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class SignatureStatus:
    """Status of a signature as reported by the cluster.

    ``confirmation_status`` is None when the signature is unknown.
    """

    found: bool
    confirmation_status: ConfirmationStatus | None = None
    error: str | None = None


@dataclass(frozen=True)
class Checkpoint:
    """A recent blockhash and the last block height it stays valid for."""

    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SubmitResult:
    """Result of submitting a signed transaction.

    Attributes:
        accepted: Whether the node accepted the transaction for processing.
            True does NOT mean confirmed.
        signature: Transaction signature. Present when accepted.
        error_code: JSON-RPC error code when rejected.
        detail: Human-readable detail for diagnostics.
    """

    accepted: bool
    signature: str | None = None
    error_code: int | None = None
    detail: str | None = None


@dataclass(frozen=True)
class ConfirmationResult:
    """Outcome of waiting for a submitted transaction.

    Exactly one of these holds:
        - confirmed: reached ``confirmed`` without an execution error.
        - error is set: landed, but execution failed (nothing moved).
        - expired: the blockhash validity window passed without landing.
        - timed_out: the wall-clock bound elapsed first.
    """

    confirmed: bool
    status: ConfirmationStatus | None = None
    error: str | None = None
    expired: bool = False
    timed_out: bool = False


# =========================================================================
# Protocol
# =========================================================================


@runtime_checkable
class LedgerClient(Protocol):
    """Interface for ledger network operations.

    Implementations bound every call with a timeout and raise on
    transport failures. Expected ledger outcomes (unknown signature,
    rejected submission) are reported in result objects.
    """

    async def get_transaction(self, signature: str) -> LedgerTransaction | None:
        """Fetch and parse a transaction. None if the ledger does not know it."""
        ...

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        """Fetch the confirmation status of a signature, searching history."""
        ...

    async def get_latest_checkpoint(self) -> Checkpoint:
        """Fetch a fresh blockhash and its validity bound."""
        ...

    async def account_exists(self, address: str) -> bool:
        """Whether an account exists at ``address``."""
        ...

    async def submit(self, signed_tx: bytes) -> SubmitResult:
        """Submit a serialized, signed transaction."""
        ...

    async def await_confirmation(
        self, signature: str, last_valid_block_height: int
    ) -> ConfirmationResult:
        """Wait until ``signature`` is confirmed, failed, expired or timed out."""
        ...
