"""
Native-coin payment verification.

A qualifying payment is a system-program transfer whose destination is
exactly the treasury address. When several instructions qualify, the
first one wins; amounts are not summed.
"""

from __future__ import annotations

from decimal import Decimal

import structlog

from treasury_bridge.errors import ErrorCode, VerificationError
from treasury_bridge.ledger.client import LedgerClient, NativeTransfer
from treasury_bridge.models import (
    NATIVE_DECIMALS,
    NATIVE_SYMBOL,
    AssetKind,
    VerifiedPayment,
    raw_to_decimal,
)
from treasury_bridge.verification.common import fetch_confirmed_transaction, payer_of

logger = structlog.get_logger(__name__)


class NativePaymentVerifier:
    """Verifies native-coin transfers to the treasury.

    Args:
        client: Ledger client used for reads.
        treasury_address: Base58 treasury address; the only accepted destination.
        max_per_purchase: Cap on a single payment, in whole coins.
    """

    def __init__(
        self,
        client: LedgerClient,
        treasury_address: str,
        max_per_purchase: Decimal,
    ) -> None:
        self._client = client
        self._treasury = treasury_address
        self._cap = max_per_purchase

    async def verify(self, reference: str) -> VerifiedPayment:
        """Verify ``reference`` as a native payment to the treasury.

        Raises:
            VerificationError: On any failed acceptance check.
        """
        tx = await fetch_confirmed_transaction(self._client, reference)

        transfer = next(
            (
                ix for ix in tx.instructions
                if isinstance(ix, NativeTransfer) and ix.destination == self._treasury
            ),
            None,
        )
        if transfer is None:
            raise VerificationError(
                ErrorCode.NO_QUALIFYING_TRANSFER,
                "No valid SystemProgram.transfer to treasury found",
            )

        lamports = transfer.lamports
        if lamports is None or lamports <= 0:
            raise VerificationError(ErrorCode.INVALID_AMOUNT, "Invalid lamports amount")

        amount = raw_to_decimal(lamports, NATIVE_DECIMALS)
        if amount > self._cap:
            raise VerificationError(
                ErrorCode.CAP_EXCEEDED,
                f"Amount exceeds max cap ({self._cap} {NATIVE_SYMBOL})",
            )

        payment = VerifiedPayment(
            reference=reference,
            payer=payer_of(tx),
            kind=AssetKind.NATIVE,
            symbol=NATIVE_SYMBOL,
            raw_amount=lamports,
            precision=NATIVE_DECIMALS,
            gross_amount=amount,
        )
        logger.info(
            "payment_verified",
            reference=reference,
            payer=payment.payer,
            asset=NATIVE_SYMBOL,
            amount=str(amount),
        )
        return payment
