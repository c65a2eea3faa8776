"""
Solana JSON-RPC client — real network implementation of LedgerClient.

Translates JSON-RPC responses into the frozen result types of client.py.
Uses an injectable transport (JsonRpcTransport) so the HTTP layer can be
swapped for test fakes without changing parsing logic.

No retry loops beyond the confirmation poll. No secrets.

Response parsing targets Solana JSON-RPC conventions:
    - Success: {"jsonrpc": "2.0", "result": ..., "id": n}
    - Error:   {"jsonrpc": "2.0", "error": {"code": ..., "message": ...}, "id": n}
    - getTransaction with encoding=jsonParsed returns parsed instructions
      for known programs ("parsed": {"type": ..., "info": {...}}) and
      raw instructions ("data", "accounts") for everything else.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import time
from collections.abc import Awaitable, Callable
from typing import Any

from treasury_bridge.ledger.accounts import (
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_IDS,
)
from treasury_bridge.ledger.client import (
    Checkpoint,
    ConfirmationResult,
    ConfirmationStatus,
    Instruction,
    LedgerTransaction,
    NativeTransfer,
    OpaqueInstruction,
    SignatureStatus,
    SubmitResult,
    TokenBalance,
    TokenTransfer,
)
from treasury_bridge.ledger.errors import LedgerRpcError, describe_transaction_error
from treasury_bridge.ledger.transport import HttpxTransport, JsonRpcTransport

# Commitment used for every read. Matches the finality the verifiers require.
COMMITMENT = "confirmed"


class SolanaJsonRpcClient:
    """Solana JSON-RPC client implementing the LedgerClient protocol.

    Args:
        url: The JSON-RPC endpoint URL (e.g. "https://api.devnet.solana.com").
        transport: Injectable transport for HTTP POST. Defaults to
            HttpxTransport. Pass a FakeTransport for testing.
        confirmation_timeout: Wall-clock bound for await_confirmation, seconds.
        poll_interval: Delay between confirmation polls, seconds.
        sleep: Awaitable sleep. Inject for deterministic tests.
        clock: Monotonic clock in seconds. Inject for deterministic tests.
    """

    def __init__(
        self,
        url: str,
        transport: JsonRpcTransport | None = None,
        *,
        confirmation_timeout: float = 60.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._transport = transport or HttpxTransport()
        self._confirmation_timeout = confirmation_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._ids = itertools.count(1)

    @property
    def url(self) -> str:
        """The JSON-RPC endpoint URL."""
        return self._url

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Send one JSON-RPC request and return its ``result`` member.

        Raises:
            LedgerRpcError: If the response carries an ``error`` member.
            Exception: Transport failures propagate unchanged.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        response = await self._transport.post_json(self._url, payload)
        error = response.get("error")
        if error is not None:
            raise _rpc_error(error)
        return response.get("result")

    # -----------------------------------------------------------------
    # LedgerClient protocol methods
    # -----------------------------------------------------------------

    async def get_transaction(self, signature: str) -> LedgerTransaction | None:
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": COMMITMENT,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        return _parse_transaction(signature, result)

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        return _parse_signature_status(result)

    async def get_latest_checkpoint(self) -> Checkpoint:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": COMMITMENT}]
        )
        return _parse_checkpoint(result)

    async def account_exists(self, address: str) -> bool:
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": COMMITMENT}],
        )
        return isinstance(result, dict) and result.get("value") is not None

    async def submit(self, signed_tx: bytes) -> SubmitResult:
        """Send a signed transaction with preflight enabled.

        A JSON-RPC error is a rejection and is returned, not raised.
        Transport exceptions propagate: the transaction may or may not
        have reached the node.
        """
        encoded = base64.b64encode(signed_tx).decode("ascii")
        try:
            result = await self._call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": COMMITMENT,
                    },
                ],
            )
        except LedgerRpcError as exc:
            return SubmitResult(accepted=False, error_code=exc.code, detail=exc.message)

        if not isinstance(result, str) or not result:
            return SubmitResult(
                accepted=False,
                detail="no signature in sendTransaction response",
            )
        return SubmitResult(accepted=True, signature=result)

    async def await_confirmation(
        self, signature: str, last_valid_block_height: int
    ) -> ConfirmationResult:
        """Poll until confirmed, failed, expired, or the wall-clock bound passes."""
        deadline = self._clock() + self._confirmation_timeout
        last_status: ConfirmationStatus | None = None

        while True:
            status = await self.get_signature_status(signature)
            if status.found:
                last_status = status.confirmation_status
                if status.error is not None:
                    return ConfirmationResult(
                        confirmed=False, status=last_status, error=status.error
                    )
                if last_status is not None and last_status.is_confirmed:
                    return ConfirmationResult(confirmed=True, status=last_status)

            block_height = await self._call("getBlockHeight", [{"commitment": COMMITMENT}])
            if isinstance(block_height, int) and block_height > last_valid_block_height:
                return ConfirmationResult(confirmed=False, status=last_status, expired=True)

            if self._clock() >= deadline:
                return ConfirmationResult(confirmed=False, status=last_status, timed_out=True)

            await self._sleep(self._poll_interval)


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _rpc_error(error: Any) -> LedgerRpcError:
    if isinstance(error, dict):
        code = error.get("code")
        return LedgerRpcError(
            code if isinstance(code, int) else None,
            str(error.get("message", "unknown rpc error")),
        )
    return LedgerRpcError(None, str(error))


def _parse_int(value: Any) -> int | None:
    """Parse a raw ledger integer: JSON int or decimal-digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _parse_instruction(raw: dict[str, Any]) -> Instruction:
    """Parse one jsonParsed instruction into its variant.

    Anything without a ``parsed`` object, or of a type the verifiers do
    not inspect, becomes an OpaqueInstruction.
    """
    program_id = str(raw.get("programId", ""))
    parsed = raw.get("parsed")
    if not isinstance(parsed, dict):
        return OpaqueInstruction(program_id=program_id)

    ix_type = parsed.get("type")
    info = parsed.get("info")
    if not isinstance(info, dict):
        return OpaqueInstruction(program_id=program_id)

    if program_id == SYSTEM_PROGRAM_ID and ix_type == "transfer":
        return NativeTransfer(
            source=str(info.get("source", "")),
            destination=str(info.get("destination", "")),
            lamports=_parse_int(info.get("lamports")),
        )

    if program_id in TOKEN_PROGRAM_IDS and ix_type in ("transfer", "transferChecked"):
        token_amount = info.get("tokenAmount")
        if isinstance(token_amount, dict):
            raw_amount = _parse_int(token_amount.get("amount"))
            decimals = _parse_int(token_amount.get("decimals"))
        else:
            raw_amount = _parse_int(info.get("amount"))
            decimals = None
        authority = info.get("authority") or info.get("multisigAuthority")
        mint = info.get("mint")
        return TokenTransfer(
            program_id=program_id,
            source=str(info.get("source", "")),
            destination=str(info.get("destination", "")),
            authority=str(authority) if authority else None,
            raw_amount=raw_amount,
            mint=str(mint) if mint else None,
            decimals=decimals,
        )

    return OpaqueInstruction(program_id=program_id)


def _parse_signers(message: dict[str, Any]) -> tuple[str, ...]:
    """Signer addresses in message order.

    jsonParsed account keys are objects with a ``signer`` flag. The fee
    payer is always the first key and always signs.
    """
    keys = message.get("accountKeys") or []
    signers: list[str] = []
    for index, key in enumerate(keys):
        if isinstance(key, dict):
            if key.get("signer"):
                signers.append(str(key.get("pubkey", "")))
        elif index == 0:
            signers.append(str(key))
    return tuple(signers)


def _parse_token_balances(meta: dict[str, Any]) -> tuple[TokenBalance, ...]:
    balances: list[TokenBalance] = []
    for entry in meta.get("postTokenBalances") or []:
        if not isinstance(entry, dict):
            continue
        ui_amount = entry.get("uiTokenAmount")
        if not isinstance(ui_amount, dict):
            ui_amount = {}
        owner = entry.get("owner")
        balances.append(TokenBalance(
            account_index=int(entry.get("accountIndex", -1)),
            mint=str(entry.get("mint", "")),
            owner=str(owner) if owner else None,
            raw_amount=_parse_int(ui_amount.get("amount")),
            decimals=_parse_int(ui_amount.get("decimals")),
        ))
    return tuple(balances)


def _parse_transaction(signature: str, result: dict[str, Any]) -> LedgerTransaction:
    """Parse a getTransaction (jsonParsed) result."""
    meta = result.get("meta")
    if not isinstance(meta, dict):
        meta = {}
    transaction = result.get("transaction")
    if not isinstance(transaction, dict):
        transaction = {}
    message = transaction.get("message")
    if not isinstance(message, dict):
        message = {}

    error = describe_transaction_error(meta.get("err"))
    instructions = tuple(
        _parse_instruction(ix)
        for ix in message.get("instructions") or []
        if isinstance(ix, dict)
    )

    return LedgerTransaction(
        signature=signature,
        slot=_parse_int(result.get("slot")),
        failed=error is not None,
        error=error,
        signers=_parse_signers(message),
        instructions=instructions,
        post_token_balances=_parse_token_balances(meta),
    )


def _parse_signature_status(result: Any) -> SignatureStatus:
    """Parse a getSignatureStatuses result for a single signature."""
    if not isinstance(result, dict):
        return SignatureStatus(found=False)
    values = result.get("value") or []
    entry = values[0] if values else None
    if not isinstance(entry, dict):
        return SignatureStatus(found=False)

    raw_status = entry.get("confirmationStatus")
    try:
        confirmation = ConfirmationStatus(raw_status) if raw_status else None
    except ValueError:
        confirmation = None

    return SignatureStatus(
        found=True,
        confirmation_status=confirmation,
        error=describe_transaction_error(entry.get("err")),
    )


def _parse_checkpoint(result: Any) -> Checkpoint:
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, dict):
        raise LedgerRpcError(None, "malformed getLatestBlockhash response")
    blockhash = value.get("blockhash")
    height = _parse_int(value.get("lastValidBlockHeight"))
    if not blockhash or height is None:
        raise LedgerRpcError(None, "malformed getLatestBlockhash response")
    return Checkpoint(blockhash=str(blockhash), last_valid_block_height=height)
