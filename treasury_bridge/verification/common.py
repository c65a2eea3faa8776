"""
Checks shared by both verifiers.

    1. The transaction exists.
    2. It did not fail on-chain.
    3. Its signature status is independently confirmed (``confirmed`` or
       ``finalized``). A fetched transaction object alone is not proof of
       irreversibility.

Payer identity is always the fee payer (first signer). It comes from the
signed message, so a sender cannot spoof it through instruction data.
"""

from __future__ import annotations

from treasury_bridge.errors import ErrorCode, VerificationError
from treasury_bridge.ledger.client import LedgerClient, LedgerTransaction


async def fetch_confirmed_transaction(
    client: LedgerClient, reference: str
) -> LedgerTransaction:
    """Fetch ``reference`` and require confirmed, successful execution.

    Raises:
        VerificationError: REFERENCE_NOT_FOUND, ON_CHAIN_FAILURE,
            NOT_CONFIRMED, or LEDGER_UNAVAILABLE if a ledger call fails.
    """
    try:
        tx = await client.get_transaction(reference)
    except Exception as exc:
        raise VerificationError(
            ErrorCode.LEDGER_UNAVAILABLE, f"getTransaction failed: {exc}"
        ) from exc

    if tx is None:
        raise VerificationError(ErrorCode.REFERENCE_NOT_FOUND, "Transaction not found")
    if tx.failed:
        raise VerificationError(
            ErrorCode.ON_CHAIN_FAILURE, f"Transaction failed on-chain ({tx.error})"
        )

    try:
        status = await client.get_signature_status(reference)
    except Exception as exc:
        raise VerificationError(
            ErrorCode.LEDGER_UNAVAILABLE, f"getSignatureStatuses failed: {exc}"
        ) from exc

    if status.error is not None:
        raise VerificationError(
            ErrorCode.ON_CHAIN_FAILURE, f"Transaction failed on-chain ({status.error})"
        )
    confirmation = status.confirmation_status
    if confirmation is None or not confirmation.is_confirmed:
        shown = confirmation.value if confirmation is not None else None
        raise VerificationError(
            ErrorCode.NOT_CONFIRMED, f"Transaction not confirmed (status={shown})"
        )
    return tx


def payer_of(tx: LedgerTransaction) -> str:
    """The transaction's fee payer: its first required signer."""
    if not tx.signers or not tx.signers[0]:
        raise VerificationError(
            ErrorCode.NO_QUALIFYING_TRANSFER, "Transaction has no signer"
        )
    return tx.signers[0]
