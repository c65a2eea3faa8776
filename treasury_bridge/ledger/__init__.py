"""
Solana ledger access.

    - ``client``          — LedgerClient protocol and parsed result types.
    - ``jsonrpc_client``  — JSON-RPC implementation over an injectable transport.
    - ``signer``          — TreasuryIdentity, the only holder of key material.
    - ``tx``              — outbound payout instruction builder.
    - ``accounts``        — address parsing and token-account derivation.
"""

from treasury_bridge.ledger.client import (
    Checkpoint,
    ConfirmationResult,
    ConfirmationStatus,
    LedgerClient,
    LedgerTransaction,
    NativeTransfer,
    OpaqueInstruction,
    SignatureStatus,
    SubmitResult,
    TokenBalance,
    TokenTransfer,
)
from treasury_bridge.ledger.jsonrpc_client import SolanaJsonRpcClient
from treasury_bridge.ledger.signer import SignedTransaction, TreasuryIdentity

__all__ = [
    "Checkpoint",
    "ConfirmationResult",
    "ConfirmationStatus",
    "LedgerClient",
    "LedgerTransaction",
    "NativeTransfer",
    "OpaqueInstruction",
    "SignatureStatus",
    "SignedTransaction",
    "SolanaJsonRpcClient",
    "SubmitResult",
    "TokenBalance",
    "TokenTransfer",
    "TreasuryIdentity",
]
