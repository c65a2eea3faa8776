"""
Tests for treasury provisioning.

Test plan:
- Nothing missing → no transaction, empty result
- Missing accounts → one transaction, owned by the receiver, paid by
  the treasury, duplicates collapsed
- Lookup failure → LEDGER_UNAVAILABLE
- Rejected / failed / unconfirmed creation → typed SettlementError
"""

import pytest
from solders.transaction import Transaction

from fakes import (
    OUTPUT_MINT,
    RECEIVER,
    TREASURY,
    USDC_MINT,
    FakeLedgerClient,
    make_identity,
)

from treasury_bridge.errors import ErrorCode, SettlementError
from treasury_bridge.ledger.accounts import derive_token_account
from treasury_bridge.ledger.client import ConfirmationResult, SubmitResult
from treasury_bridge.provisioning import provision_treasury_accounts

USDC_ATA = derive_token_account(RECEIVER, USDC_MINT)
OUTPUT_ATA = derive_token_account(RECEIVER, OUTPUT_MINT)


async def _provision(client: FakeLedgerClient, mints: list[str]) -> list[str]:
    return await provision_treasury_accounts(client, make_identity(), RECEIVER, mints)


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_all_present(self) -> None:
        client = FakeLedgerClient(existing_accounts={USDC_ATA})

        created = await _provision(client, [USDC_MINT])

        assert created == []
        assert client.count("submit") == 0

    @pytest.mark.asyncio
    async def test_creates_missing(self) -> None:
        client = FakeLedgerClient(existing_accounts={USDC_ATA})

        created = await _provision(client, [USDC_MINT, OUTPUT_MINT, OUTPUT_MINT])

        assert created == [OUTPUT_ATA]
        assert client.count("account_exists") == 2
        assert client.count("submit") == 1
        tx = Transaction.from_bytes(client.submitted[0])
        assert str(tx.message.account_keys[0]) == TREASURY
        assert len(tx.message.instructions) == 1

    @pytest.mark.asyncio
    async def test_lookup_failure(self) -> None:
        client = FakeLedgerClient(errors={"account_exists": ConnectionError("down")})

        with pytest.raises(SettlementError) as exc_info:
            await _provision(client, [USDC_MINT])

        assert exc_info.value.code == ErrorCode.LEDGER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_rejected(self) -> None:
        client = FakeLedgerClient(submit_result=SubmitResult(
            accepted=False, error_code=-32002, detail="insufficient funds for rent"
        ))

        with pytest.raises(SettlementError) as exc_info:
            await _provision(client, [USDC_MINT])

        assert exc_info.value.code == ErrorCode.SUBMISSION_FAILED
        assert "insufficient funds" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_failed_on_chain(self) -> None:
        client = FakeLedgerClient(confirmation=ConfirmationResult(
            confirmed=False, error="InsufficientFundsForRent"
        ))

        with pytest.raises(SettlementError) as exc_info:
            await _provision(client, [USDC_MINT])

        assert exc_info.value.code == ErrorCode.SUBMISSION_FAILED
        assert exc_info.value.outbound_tx_id is not None

    @pytest.mark.asyncio
    async def test_not_confirmed(self) -> None:
        client = FakeLedgerClient(confirmation=ConfirmationResult(confirmed=False, timed_out=True))

        with pytest.raises(SettlementError) as exc_info:
            await _provision(client, [USDC_MINT])

        assert exc_info.value.code == ErrorCode.CONFIRMATION_TIMEOUT
