"""
Ledger error mapping — translates JSON-RPC failures to pipeline dispositions.

Keeps the mapping coarse and conservative. A rejected ``sendTransaction``
is only treated as "nothing left the treasury" when the error code is one
the node returns *before* forwarding the transaction. Unknown codes are
treated as UNCERTAIN rather than guessing.

Relevant Solana JSON-RPC error codes:
    - -32002: transaction simulation (preflight) failed — not forwarded
    - -32003: signature verification failure — not forwarded
    - -32005: node is unhealthy / behind — not forwarded
    - -32013: transaction signature length mismatch — not forwarded
    - -32015: unsupported transaction version — not forwarded
    - -32602: invalid params — not forwarded

Reference:
    https://solana.com/docs/rpc
"""

from __future__ import annotations

from typing import Any

from treasury_bridge.canonical_json import canonical_json
from treasury_bridge.errors import Disposition

PREFLIGHT_FAILURE = -32002

# Error codes returned before the transaction is forwarded to a leader.
_NOT_FORWARDED: frozenset[int] = frozenset({
    PREFLIGHT_FAILURE,
    -32003,
    -32005,
    -32013,
    -32015,
    -32602,
})


class LedgerRpcError(Exception):
    """A JSON-RPC ``error`` member returned by the node.

    Attributes:
        code: JSON-RPC error code.
        message: Error message reported by the node.
    """

    def __init__(self, code: int | None, message: str) -> None:
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.message = message


def classify_submit_rejection(error_code: int | None) -> Disposition:
    """Map a rejected submission to a disposition.

    Args:
        error_code: JSON-RPC error code from ``sendTransaction``. None
            means the node answered without a recognizable code.

    Returns:
        RETRYABLE if the node certainly did not forward the transaction,
        UNCERTAIN otherwise.
    """
    if error_code is not None and error_code in _NOT_FORWARDED:
        return Disposition.RETRYABLE
    return Disposition.UNCERTAIN


def describe_transaction_error(err: Any) -> str | None:
    """Render a transaction ``err`` value as a stable string.

    The node reports errors as strings ("AccountNotFound") or nested
    objects ({"InstructionError": [0, {"Custom": 1}]}). None means success.
    """
    if err is None:
        return None
    if isinstance(err, str):
        return err
    return canonical_json(err)
