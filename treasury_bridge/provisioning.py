"""
Treasury provisioning — make sure the receiving address can hold tokens.

Token payments are only accepted into the receiving address's
associated token account for each accepted mint. If such an account does
not exist yet, a payer cannot send to it. Provisioning creates the
missing ones in a single transaction, rent and fee paid by the treasury.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from treasury_bridge.errors import ErrorCode, SettlementError
from treasury_bridge.ledger.accounts import derive_token_account
from treasury_bridge.ledger.client import LedgerClient
from treasury_bridge.ledger.signer import TreasuryIdentity
from treasury_bridge.ledger.tx import plan_account_creation

logger = structlog.get_logger(__name__)


async def provision_treasury_accounts(
    client: LedgerClient,
    identity: TreasuryIdentity,
    owner: str,
    mints: Sequence[str],
) -> list[str]:
    """Create ``owner``'s missing token accounts for ``mints``.

    Args:
        client: Ledger client.
        identity: Treasury identity paying for the accounts.
        owner: Address the accounts belong to (the receiving address).
        mints: Accepted token mints.

    Returns:
        Addresses of the accounts that were created. Empty if all existed.

    Raises:
        SettlementError: LEDGER_UNAVAILABLE if the lookups fail,
            SUBMISSION_FAILED or CONFIRMATION_TIMEOUT if creating fails.
    """
    unique = list(dict.fromkeys(mints))
    try:
        missing = [
            mint for mint in unique
            if not await client.account_exists(derive_token_account(owner, mint))
        ]
    except Exception as exc:
        raise SettlementError(
            ErrorCode.LEDGER_UNAVAILABLE, f"account lookup failed: {exc}"
        ) from exc

    if not missing:
        logger.info("treasury_accounts_present", owner=owner, mints=unique)
        return []

    instructions, accounts = plan_account_creation(
        payer=identity.address, owner=owner, mints=missing
    )
    try:
        checkpoint = await client.get_latest_checkpoint()
        signed = identity.sign(instructions, checkpoint.blockhash)
        submitted = await client.submit(signed.payload)
    except Exception as exc:
        raise SettlementError(
            ErrorCode.SUBMISSION_FAILED, f"account creation not submitted: {exc}"
        ) from exc

    if not submitted.accepted:
        raise SettlementError(
            ErrorCode.SUBMISSION_FAILED,
            f"account creation rejected: {submitted.detail or 'no detail'}",
        )

    tx_id = submitted.signature or signed.signature
    try:
        confirmation = await client.await_confirmation(
            tx_id, checkpoint.last_valid_block_height
        )
    except Exception as exc:
        raise SettlementError(
            ErrorCode.CONFIRMATION_TIMEOUT,
            f"account creation confirmation failed: {exc}",
            outbound_tx_id=tx_id,
        ) from exc
    if confirmation.error is not None:
        raise SettlementError(
            ErrorCode.SUBMISSION_FAILED,
            f"account creation failed on-chain ({confirmation.error})",
            outbound_tx_id=tx_id,
        )
    if not confirmation.confirmed:
        raise SettlementError(
            ErrorCode.CONFIRMATION_TIMEOUT,
            "account creation not confirmed",
            outbound_tx_id=tx_id,
        )

    logger.info("treasury_accounts_created", owner=owner, accounts=list(accounts), tx_id=tx_id)
    return list(accounts)
