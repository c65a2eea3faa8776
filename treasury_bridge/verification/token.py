"""
Fungible-token payment verification.

The only accepted destination is the asset's configured destination: the
receiving address's associated token account for the expected mint,
derived off-chain from (mint, receiving address) when the registry is built.

Amount and precision come from one of two sources:

    1. ``transferChecked`` carries them inline (``tokenAmount``).
    2. Plain ``transfer`` carries only the raw amount; precision is read
       from the post-transaction balance snapshot of the treasury's
       account for that mint.

Transfer instructions do not uniformly carry decimals, so the verifier
falls back to the ledger's own post-state instead of trusting anything
supplied by the caller.
"""

from __future__ import annotations

import structlog

from treasury_bridge.errors import ErrorCode, VerificationError
from treasury_bridge.ledger.accounts import SPL_TOKEN_PROGRAM_ID
from treasury_bridge.ledger.client import LedgerClient, LedgerTransaction, TokenTransfer
from treasury_bridge.models import AssetKind, AssetSpec, VerifiedPayment, raw_to_decimal
from treasury_bridge.verification.common import fetch_confirmed_transaction, payer_of

logger = structlog.get_logger(__name__)


class TokenPaymentVerifier:
    """Verifies token transfers into the treasury's token account.

    Args:
        client: Ledger client used for reads.
        treasury_address: Base58 treasury wallet address (token account owner).
    """

    def __init__(self, client: LedgerClient, treasury_address: str) -> None:
        self._client = client
        self._treasury = treasury_address

    async def verify(self, reference: str, asset: AssetSpec) -> VerifiedPayment:
        """Verify ``reference`` as a payment of ``asset`` to the treasury.

        Raises:
            VerificationError: On any failed acceptance check.
        """
        if asset.kind != AssetKind.TOKEN or asset.mint is None:
            raise VerificationError(
                ErrorCode.UNSUPPORTED_ASSET, f"{asset.symbol} is not a token asset"
            )
        mint = asset.mint

        tx = await fetch_confirmed_transaction(self._client, reference)
        transfer = _find_transfer(tx, asset.destination, mint)

        if transfer.raw_amount is not None and transfer.decimals is not None:
            raw_amount: int | None = transfer.raw_amount
            decimals = transfer.decimals
        else:
            decimals = self._snapshot_decimals(tx, mint)
            raw_amount = transfer.raw_amount
            if raw_amount is None:
                raise VerificationError(
                    ErrorCode.INVALID_AMOUNT, "Missing amount in SPL transfer"
                )

        if raw_amount <= 0:
            raise VerificationError(ErrorCode.INVALID_AMOUNT, "Invalid SPL amount")

        payment = VerifiedPayment(
            reference=reference,
            payer=payer_of(tx),
            kind=AssetKind.TOKEN,
            symbol=asset.symbol,
            raw_amount=raw_amount,
            precision=decimals,
            gross_amount=raw_to_decimal(raw_amount, decimals),
        )
        logger.info(
            "payment_verified",
            reference=reference,
            payer=payment.payer,
            asset=asset.symbol,
            amount=str(payment.gross_amount),
            decimals=decimals,
        )
        return payment

    def _snapshot_decimals(self, tx: LedgerTransaction, mint: str) -> int:
        balance = next(
            (
                b for b in tx.post_token_balances
                if b.owner == self._treasury and b.mint == mint and b.decimals is not None
            ),
            None,
        )
        if balance is None or balance.decimals is None:
            raise VerificationError(
                ErrorCode.UNRESOLVED_PRECISION,
                "Cannot resolve token decimals for transfer",
            )
        return balance.decimals


def _find_transfer(tx: LedgerTransaction, expected_account: str, mint: str) -> TokenTransfer:
    """First token transfer into ``expected_account`` of the expected mint.

    A transfer into the right account that declares another mint is not
    accepted. If no acceptable transfer exists and such a mismatch was
    seen, the failure is ASSET_MISMATCH rather than NO_QUALIFYING_TRANSFER.
    """
    mismatched: str | None = None
    for ix in tx.instructions:
        if not isinstance(ix, TokenTransfer):
            continue
        if ix.program_id != SPL_TOKEN_PROGRAM_ID or ix.destination != expected_account:
            continue
        if ix.mint is not None and ix.mint != mint:
            mismatched = mismatched or ix.mint
            continue
        return ix

    if mismatched is not None:
        raise VerificationError(
            ErrorCode.ASSET_MISMATCH,
            f"Mint mismatch (expected {mint}, got {mismatched})",
        )
    raise VerificationError(
        ErrorCode.NO_QUALIFYING_TRANSFER,
        "No valid SPL token transfer to treasury ATA found",
    )
