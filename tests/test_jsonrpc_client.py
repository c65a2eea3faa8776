"""
Tests for SolanaJsonRpcClient — canned JSON-RPC responses, no network.

Uses a FakeTransport that returns pre-built response dicts,
exercising the parsing logic in jsonrpc_client.py.

Test plan:
- Request framing: method, params, commitment, incrementing ids
- getTransaction: null → None, system transfer parsed, transferChecked
  parsed with inline amount/decimals, plain transfer without decimals,
  unknown programs opaque, on-chain error marks failed, signers in order,
  post-token balances parsed
- getSignatureStatuses: null entry → not found, confirmed/finalized,
  unknown status string, error carried
- getLatestBlockhash: parsed, malformed → LedgerRpcError
- getAccountInfo: null value → False
- sendTransaction: accepted → signature, rpc error → rejected with code
- await_confirmation: confirmed, landed with error, expired, timed out
- Transport and rpc errors propagate to the caller
"""

from typing import Any

import httpx
import pytest

from fakes import ErrorTransport, FakeTransport, PAYER, RECEIVER, USDC_MINT

from treasury_bridge.ledger.accounts import SPL_TOKEN_PROGRAM_ID, SYSTEM_PROGRAM_ID
from treasury_bridge.ledger.client import (
    ConfirmationStatus,
    NativeTransfer,
    OpaqueInstruction,
    TokenTransfer,
)
from treasury_bridge.ledger.errors import LedgerRpcError
from treasury_bridge.ledger.jsonrpc_client import SolanaJsonRpcClient

URL = "https://rpc.test"
SIG = "5" * 88


def _ok(result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def _err(code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}


def _client(transport: Any, **kwargs: Any) -> SolanaJsonRpcClient:
    return SolanaJsonRpcClient(URL, transport, **kwargs)


def _status(confirmation: str | None, err: Any = None) -> dict[str, Any]:
    return _ok({
        "context": {"slot": 1},
        "value": [{"slot": 1, "confirmations": None, "err": err,
                   "confirmationStatus": confirmation}],
    })


NATIVE_TX = _ok({
    "slot": 321,
    "meta": {"err": None, "postTokenBalances": []},
    "transaction": {
        "message": {
            "accountKeys": [
                {"pubkey": PAYER, "signer": True, "writable": True},
                {"pubkey": RECEIVER, "signer": False, "writable": True},
            ],
            "instructions": [
                {
                    "programId": SYSTEM_PROGRAM_ID,
                    "parsed": {
                        "type": "transfer",
                        "info": {"source": PAYER, "destination": RECEIVER,
                                 "lamports": 2_500_000_000},
                    },
                },
                {"programId": "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
                 "parsed": "order-42"},
            ],
        },
    },
})

TOKEN_TX = _ok({
    "slot": 322,
    "meta": {
        "err": None,
        "postTokenBalances": [
            {"accountIndex": 2, "mint": USDC_MINT, "owner": RECEIVER,
             "uiTokenAmount": {"amount": "7000000", "decimals": 6}},
        ],
    },
    "transaction": {
        "message": {
            "accountKeys": [{"pubkey": PAYER, "signer": True}],
            "instructions": [
                {
                    "programId": SPL_TOKEN_PROGRAM_ID,
                    "parsed": {
                        "type": "transferChecked",
                        "info": {
                            "source": "src-ata",
                            "destination": "dst-ata",
                            "authority": PAYER,
                            "mint": USDC_MINT,
                            "tokenAmount": {"amount": "1000000", "decimals": 6},
                        },
                    },
                },
                {
                    "programId": SPL_TOKEN_PROGRAM_ID,
                    "parsed": {
                        "type": "transfer",
                        "info": {"source": "src-ata", "destination": "dst-ata",
                                 "authority": PAYER, "amount": "42"},
                    },
                },
            ],
        },
    },
})


class TestRequestFraming:
    @pytest.mark.asyncio
    async def test_get_transaction_params(self) -> None:
        transport = FakeTransport({"getTransaction": _ok(None)})
        await _client(transport).get_transaction(SIG)

        url, payload = transport.calls[0]
        assert url == URL
        assert payload["jsonrpc"] == "2.0"
        assert payload["method"] == "getTransaction"
        assert payload["params"] == [
            SIG,
            {"encoding": "jsonParsed", "commitment": "confirmed",
             "maxSupportedTransactionVersion": 0},
        ]

    @pytest.mark.asyncio
    async def test_ids_increment(self) -> None:
        transport = FakeTransport({"getTransaction": _ok(None)})
        client = _client(transport)
        await client.get_transaction(SIG)
        await client.get_transaction(SIG)
        assert [p["id"] for _, p in transport.calls] == [1, 2]

    @pytest.mark.asyncio
    async def test_signature_status_searches_history(self) -> None:
        transport = FakeTransport({"getSignatureStatuses": _status("confirmed")})
        await _client(transport).get_signature_status(SIG)
        assert transport.calls[0][1]["params"] == [[SIG], {"searchTransactionHistory": True}]

    @pytest.mark.asyncio
    async def test_submit_base64_with_preflight(self) -> None:
        transport = FakeTransport({"sendTransaction": _ok(SIG)})
        await _client(transport).submit(b"\x01\x02\x03")
        encoded, options = transport.calls[0][1]["params"]
        assert encoded == "AQID"
        assert options["encoding"] == "base64"
        assert options["skipPreflight"] is False


class TestGetTransaction:
    @pytest.mark.asyncio
    async def test_unknown_signature_returns_none(self) -> None:
        client = _client(FakeTransport({"getTransaction": _ok(None)}))
        assert await client.get_transaction(SIG) is None

    @pytest.mark.asyncio
    async def test_native_transfer_parsed(self) -> None:
        tx = await _client(FakeTransport({"getTransaction": NATIVE_TX})).get_transaction(SIG)

        assert tx is not None
        assert tx.signature == SIG
        assert tx.slot == 321
        assert tx.failed is False
        assert tx.signers == (PAYER,)
        assert tx.instructions[0] == NativeTransfer(PAYER, RECEIVER, 2_500_000_000)
        assert isinstance(tx.instructions[1], OpaqueInstruction)

    @pytest.mark.asyncio
    async def test_transfer_checked_carries_mint_and_decimals(self) -> None:
        tx = await _client(FakeTransport({"getTransaction": TOKEN_TX})).get_transaction(SIG)

        assert tx is not None
        checked = tx.instructions[0]
        assert isinstance(checked, TokenTransfer)
        assert checked.raw_amount == 1_000_000
        assert checked.decimals == 6
        assert checked.mint == USDC_MINT
        assert checked.authority == PAYER

    @pytest.mark.asyncio
    async def test_plain_transfer_has_no_decimals(self) -> None:
        tx = await _client(FakeTransport({"getTransaction": TOKEN_TX})).get_transaction(SIG)

        assert tx is not None
        plain = tx.instructions[1]
        assert isinstance(plain, TokenTransfer)
        assert plain.raw_amount == 42
        assert plain.decimals is None
        assert plain.mint is None

    @pytest.mark.asyncio
    async def test_post_token_balances_parsed(self) -> None:
        tx = await _client(FakeTransport({"getTransaction": TOKEN_TX})).get_transaction(SIG)

        assert tx is not None
        (balance,) = tx.post_token_balances
        assert balance.owner == RECEIVER
        assert balance.mint == USDC_MINT
        assert balance.raw_amount == 7_000_000
        assert balance.decimals == 6

    @pytest.mark.asyncio
    async def test_on_chain_error_marks_failed(self) -> None:
        failed = _ok({
            "slot": 1,
            "meta": {"err": {"InstructionError": [0, {"Custom": 1}]}},
            "transaction": {"message": {"accountKeys": [], "instructions": []}},
        })
        tx = await _client(FakeTransport({"getTransaction": failed})).get_transaction(SIG)

        assert tx is not None
        assert tx.failed is True
        assert "InstructionError" in (tx.error or "")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lamports", [1.5, "--5", "\u00b2", "12abc", None])
    async def test_non_integer_lamports_parsed_as_none(self, lamports: Any) -> None:
        odd = _ok({
            "slot": 1,
            "meta": {"err": None},
            "transaction": {"message": {
                "accountKeys": [{"pubkey": PAYER, "signer": True}],
                "instructions": [{
                    "programId": SYSTEM_PROGRAM_ID,
                    "parsed": {"type": "transfer", "info": {
                        "source": PAYER, "destination": RECEIVER, "lamports": lamports}},
                }],
            }},
        })
        tx = await _client(FakeTransport({"getTransaction": odd})).get_transaction(SIG)

        assert tx is not None
        assert tx.instructions[0] == NativeTransfer(PAYER, RECEIVER, None)

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self) -> None:
        client = _client(FakeTransport({"getTransaction": _err(-32600, "Invalid request")}))
        with pytest.raises(LedgerRpcError) as exc_info:
            await client.get_transaction(SIG)
        assert exc_info.value.code == -32600

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self) -> None:
        client = _client(ErrorTransport(httpx.ConnectTimeout("timed out")))
        with pytest.raises(httpx.ConnectTimeout):
            await client.get_transaction(SIG)


class TestSignatureStatus:
    @pytest.mark.asyncio
    async def test_null_entry_is_not_found(self) -> None:
        transport = FakeTransport({"getSignatureStatuses": _ok({"value": [None]})})
        status = await _client(transport).get_signature_status(SIG)
        assert status.found is False
        assert status.confirmation_status is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["confirmed", "finalized"])
    async def test_confirmed_levels(self, raw: str) -> None:
        transport = FakeTransport({"getSignatureStatuses": _status(raw)})
        status = await _client(transport).get_signature_status(SIG)
        assert status.found is True
        assert status.confirmation_status == ConfirmationStatus(raw)
        assert status.confirmation_status.is_confirmed

    @pytest.mark.asyncio
    async def test_processed_is_not_confirmed(self) -> None:
        transport = FakeTransport({"getSignatureStatuses": _status("processed")})
        status = await _client(transport).get_signature_status(SIG)
        assert status.confirmation_status == ConfirmationStatus.PROCESSED
        assert not status.confirmation_status.is_confirmed

    @pytest.mark.asyncio
    async def test_unknown_status_string(self) -> None:
        transport = FakeTransport({"getSignatureStatuses": _status("rooted-ish")})
        status = await _client(transport).get_signature_status(SIG)
        assert status.found is True
        assert status.confirmation_status is None

    @pytest.mark.asyncio
    async def test_error_carried(self) -> None:
        transport = FakeTransport(
            {"getSignatureStatuses": _status("confirmed", err="AccountNotFound")}
        )
        status = await _client(transport).get_signature_status(SIG)
        assert status.error == "AccountNotFound"


class TestCheckpointAndAccounts:
    @pytest.mark.asyncio
    async def test_checkpoint_parsed(self) -> None:
        transport = FakeTransport({"getLatestBlockhash": _ok({
            "context": {"slot": 1},
            "value": {"blockhash": "Hash111", "lastValidBlockHeight": 500},
        })})
        checkpoint = await _client(transport).get_latest_checkpoint()
        assert checkpoint.blockhash == "Hash111"
        assert checkpoint.last_valid_block_height == 500

    @pytest.mark.asyncio
    async def test_malformed_checkpoint_raises(self) -> None:
        transport = FakeTransport({"getLatestBlockhash": _ok({"value": {"blockhash": "x"}})})
        with pytest.raises(LedgerRpcError):
            await _client(transport).get_latest_checkpoint()

    @pytest.mark.asyncio
    async def test_account_missing(self) -> None:
        transport = FakeTransport({"getAccountInfo": _ok({"context": {}, "value": None})})
        assert await _client(transport).account_exists(RECEIVER) is False

    @pytest.mark.asyncio
    async def test_account_present(self) -> None:
        transport = FakeTransport({"getAccountInfo": _ok({
            "context": {}, "value": {"lamports": 1, "owner": SPL_TOKEN_PROGRAM_ID},
        })})
        assert await _client(transport).account_exists(RECEIVER) is True


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepted(self) -> None:
        result = await _client(FakeTransport({"sendTransaction": _ok(SIG)})).submit(b"tx")
        assert result.accepted is True
        assert result.signature == SIG

    @pytest.mark.asyncio
    async def test_preflight_rejection_returned(self) -> None:
        transport = FakeTransport({"sendTransaction": _err(
            -32002, "Transaction simulation failed: insufficient funds"
        )})
        result = await _client(transport).submit(b"tx")
        assert result.accepted is False
        assert result.error_code == -32002
        assert "simulation failed" in (result.detail or "")

    @pytest.mark.asyncio
    async def test_missing_signature_is_rejection(self) -> None:
        result = await _client(FakeTransport({"sendTransaction": _ok(None)})).submit(b"tx")
        assert result.accepted is False
        assert result.error_code is None

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self) -> None:
        client = _client(ErrorTransport(httpx.ReadTimeout("slow")))
        with pytest.raises(httpx.ReadTimeout):
            await client.submit(b"tx")


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestAwaitConfirmation:
    def _client(self, responses: dict[str, Any], clock: _Clock) -> SolanaJsonRpcClient:
        return _client(
            FakeTransport(responses),
            confirmation_timeout=5.0,
            poll_interval=1.0,
            sleep=clock.sleep,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_confirmed_after_polling(self) -> None:
        clock = _Clock()
        client = self._client({
            "getSignatureStatuses": [
                _ok({"value": [None]}),
                _status("processed"),
                _status("confirmed"),
            ],
            "getBlockHeight": _ok(10),
        }, clock)

        result = await client.await_confirmation(SIG, 100)

        assert result.confirmed is True
        assert result.status == ConfirmationStatus.CONFIRMED
        assert clock.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_landed_with_error(self) -> None:
        clock = _Clock()
        client = self._client({
            "getSignatureStatuses": _status("confirmed", err={"InstructionError": [1, "X"]}),
            "getBlockHeight": _ok(10),
        }, clock)

        result = await client.await_confirmation(SIG, 100)

        assert result.confirmed is False
        assert result.error is not None
        assert result.expired is False

    @pytest.mark.asyncio
    async def test_expired_when_block_height_passes(self) -> None:
        clock = _Clock()
        client = self._client({
            "getSignatureStatuses": _ok({"value": [None]}),
            "getBlockHeight": [_ok(99), _ok(101)],
        }, clock)

        result = await client.await_confirmation(SIG, 100)

        assert result.confirmed is False
        assert result.expired is True
        assert result.timed_out is False

    @pytest.mark.asyncio
    async def test_timed_out(self) -> None:
        clock = _Clock()
        client = self._client({
            "getSignatureStatuses": _status("processed"),
            "getBlockHeight": _ok(10),
        }, clock)

        result = await client.await_confirmation(SIG, 100)

        assert result.confirmed is False
        assert result.timed_out is True
        assert result.status == ConfirmationStatus.PROCESSED
        assert clock.now >= 5.0
