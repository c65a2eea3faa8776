"""
Settlement executor — the outbound token transfer.

One call to ``execute()`` does:
    1. Reject a non-finite or non-positive amount before touching the ledger.
    2. Truncate the amount to smallest units of the output token.
    3. Resolve the treasury's and the payer's token accounts, adding
       creation instructions (rent paid by the treasury) for any that
       are missing.
    4. Fetch a fresh checkpoint immediately before signing.
    5. Sign with the treasury identity and submit.
    6. Wait for ``confirmed`` within the checkpoint's validity window.
    7. Return a SettlementReceipt carrying the outbound signature.

No retries. A failed or unconfirmed submission is reported, never
resubmitted: resubmitting against the same state risks a double payout.

Failure dispositions:
    - Nothing left the treasury (lookup/sign failure, node rejected the
      transaction before forwarding, or it landed with an error):
      SUBMISSION_FAILED, RETRYABLE.
    - Outcome unknown (transport error while submitting, unknown rejection
      code, confirmation timed out or expired): UNCERTAIN, with the
      outbound signature attached for reconciliation.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

import structlog

from treasury_bridge.errors import Disposition, ErrorCode, SettlementError
from treasury_bridge.ledger.accounts import derive_token_account
from treasury_bridge.ledger.client import LedgerClient
from treasury_bridge.ledger.errors import classify_submit_rejection
from treasury_bridge.ledger.signer import TreasuryIdentity
from treasury_bridge.ledger.tx import plan_token_payout, to_smallest_units
from treasury_bridge.models import SettlementReceipt

logger = structlog.get_logger(__name__)


def _now_utc() -> str:
    """RFC3339 UTC timestamp for receipt creation."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


class SettlementExecutor:
    """Builds, signs, submits and confirms output-token payouts.

    Args:
        client: Ledger client for reads, submission and confirmation.
        identity: Treasury signing identity. Only used to sign.
        output_mint: Mint of the output token.
        output_decimals: Fixed precision of the output token.
        now_fn: Callable returning RFC3339 timestamps. Inject for tests.
    """

    def __init__(
        self,
        client: LedgerClient,
        identity: TreasuryIdentity,
        *,
        output_mint: str,
        output_decimals: int,
        now_fn: Callable[[], str] | None = None,
    ) -> None:
        self._client = client
        self._identity = identity
        self._mint = output_mint
        self._decimals = output_decimals
        self._now_fn = now_fn or _now_utc

    @property
    def treasury_address(self) -> str:
        return self._identity.address

    async def execute(
        self,
        payer: str,
        output_amount: Decimal,
        *,
        reference: str | None = None,
    ) -> SettlementReceipt:
        """Transfer ``output_amount`` output tokens from the treasury to ``payer``.

        Args:
            payer: Recipient wallet address.
            output_amount: Human-readable output amount.
            reference: Inbound payment reference, recorded on the receipt.

        Raises:
            SettlementError: INVALID_AMOUNT, SUBMISSION_FAILED or
                CONFIRMATION_TIMEOUT.
        """
        if not output_amount.is_finite() or output_amount <= 0:
            raise SettlementError(
                ErrorCode.INVALID_AMOUNT, f"Invalid output amount: {output_amount}"
            )
        units = to_smallest_units(output_amount, self._decimals)
        if units <= 0:
            raise SettlementError(
                ErrorCode.INVALID_AMOUNT,
                f"Output amount {output_amount} is below one smallest unit",
            )

        treasury = self._identity.address
        log = logger.bind(reference=reference, payer=payer, units=units)

        # 1. Resolve token accounts
        try:
            source = derive_token_account(treasury, self._mint)
            destination = derive_token_account(payer, self._mint)
            source_exists = await self._client.account_exists(source)
            destination_exists = (
                source_exists if destination == source
                else await self._client.account_exists(destination)
            )
            plan = plan_token_payout(
                treasury=treasury,
                recipient=payer,
                mint=self._mint,
                decimals=self._decimals,
                units=units,
                create_source=not source_exists,
                create_destination=not destination_exists,
            )
        except Exception as exc:
            raise SettlementError(
                ErrorCode.SUBMISSION_FAILED, f"could not resolve token accounts: {exc}"
            ) from exc

        # 2. Fresh checkpoint, then sign
        try:
            checkpoint = await self._client.get_latest_checkpoint()
            signed = self._identity.sign(plan.instructions, checkpoint.blockhash)
        except Exception as exc:
            raise SettlementError(
                ErrorCode.SUBMISSION_FAILED, f"could not prepare transfer: {exc}"
            ) from exc

        # 3. Submit
        try:
            submitted = await self._client.submit(signed.payload)
        except Exception as exc:
            log.error("settlement_submit_uncertain", tx_id=signed.signature, error=str(exc))
            raise SettlementError(
                ErrorCode.SUBMISSION_FAILED,
                f"submit failed, transaction may have been broadcast: {exc}",
                disposition=Disposition.UNCERTAIN,
                outbound_tx_id=signed.signature,
            ) from exc

        if not submitted.accepted:
            disposition = classify_submit_rejection(submitted.error_code)
            log.warning(
                "settlement_rejected",
                error_code=submitted.error_code,
                detail=submitted.detail,
                disposition=disposition.value,
            )
            raise SettlementError(
                ErrorCode.SUBMISSION_FAILED,
                f"transfer rejected: {submitted.detail or 'no detail'}",
                disposition=disposition,
                outbound_tx_id=signed.signature,
            )

        tx_id = submitted.signature or signed.signature
        log.info("settlement_submitted", tx_id=tx_id, created_accounts=list(plan.created_accounts))

        # 4. Confirm
        try:
            confirmation = await self._client.await_confirmation(
                tx_id, checkpoint.last_valid_block_height
            )
        except Exception as exc:
            log.error("settlement_confirmation_failed", tx_id=tx_id, error=str(exc))
            raise SettlementError(
                ErrorCode.CONFIRMATION_TIMEOUT,
                f"confirmation could not be determined: {exc}",
                outbound_tx_id=tx_id,
            ) from exc

        if confirmation.error is not None:
            log.warning("settlement_failed_on_chain", tx_id=tx_id, error=confirmation.error)
            raise SettlementError(
                ErrorCode.SUBMISSION_FAILED,
                f"transfer failed on-chain ({confirmation.error})",
                outbound_tx_id=tx_id,
            )
        if not confirmation.confirmed:
            reason = "blockhash expired" if confirmation.expired else "timed out"
            log.error("settlement_unconfirmed", tx_id=tx_id, reason=reason)
            raise SettlementError(
                ErrorCode.CONFIRMATION_TIMEOUT,
                f"transfer not confirmed ({reason}); reconcile {tx_id}",
                outbound_tx_id=tx_id,
            )

        receipt = SettlementReceipt(
            reference=reference or "",
            payer=payer,
            output_amount=output_amount,
            raw_units=units,
            outbound_tx_id=tx_id,
            payer_token_account=plan.destination_account,
            confirmed_at=self._now_fn(),
            created_accounts=plan.created_accounts,
        )
        log.info("settlement_confirmed", tx_id=tx_id)
        return receipt
