"""
Settlement pipeline — the only component callers invoke directly.

Per request:

    Received → Verifying → Verified → Converting → Converted
             → Settling → Settled(receipt)

with a terminal Rejected(error) reachable from any non-terminal state.
No state is revisited and nothing is sent unless Converted was reached.

Idempotency:
    The payment reference is claimed in the SettlementStore before
    verification starts. A claim is released when nothing could have
    left the treasury, completed with the receipt after a confirmed
    payout, and parked as UNCERTAIN when the outbound transfer's fate
    is unknown. A settled reference is never paid twice.

Cancellation:
    Once Settling is entered, the executor and the store update run in a
    shielded task. A caller that abandons the request does not abandon
    the payout: the confirmation wait and the store update finish anyway.

Every failure is returned as a SettlementOutcome; nothing is raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

import structlog

from treasury_bridge.errors import (
    BridgeError,
    Disposition,
    ErrorCode,
    SettlementError,
)
from treasury_bridge.models import (
    NATIVE_SYMBOL,
    AssetKind,
    AssetRegistry,
    ConversionResult,
    SettlementReceipt,
    VerifiedPayment,
)
from treasury_bridge.rates import RateConverter
from treasury_bridge.settlement import SettlementExecutor
from treasury_bridge.store import ClaimOutcome, ClaimResult, SettlementStore
from treasury_bridge.verification import NativePaymentVerifier, TokenPaymentVerifier

logger = structlog.get_logger(__name__)


class PipelineState(StrEnum):
    RECEIVED = "RECEIVED"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    CONVERTING = "CONVERTING"
    CONVERTED = "CONVERTED"
    SETTLING = "SETTLING"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"


_NEXT: dict[PipelineState, PipelineState] = {
    PipelineState.RECEIVED: PipelineState.VERIFYING,
    PipelineState.VERIFYING: PipelineState.VERIFIED,
    PipelineState.VERIFIED: PipelineState.CONVERTING,
    PipelineState.CONVERTING: PipelineState.CONVERTED,
    PipelineState.CONVERTED: PipelineState.SETTLING,
    PipelineState.SETTLING: PipelineState.SETTLED,
}

_TERMINAL = frozenset({PipelineState.SETTLED, PipelineState.REJECTED})


def can_transition(from_state: PipelineState, to_state: PipelineState) -> bool:
    """Whether ``from_state → to_state`` is a legal pipeline step."""
    if from_state in _TERMINAL:
        return False
    if to_state == PipelineState.REJECTED:
        return True
    return _NEXT.get(from_state) == to_state


class _StateTrail:
    """Records the states one request passes through."""

    def __init__(self) -> None:
        self.states: list[PipelineState] = [PipelineState.RECEIVED]

    @property
    def current(self) -> PipelineState:
        return self.states[-1]

    def advance(self, to_state: PipelineState) -> None:
        if not can_transition(self.current, to_state):
            raise RuntimeError(f"illegal transition {self.current} → {to_state}")
        self.states.append(to_state)


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of one pipeline run.

    Exactly one of ``receipt`` (ok) or ``error_code`` (not ok) describes
    the end state. ``payment`` and ``conversion`` are filled in as far as
    the run got.
    """

    reference: str
    ok: bool
    states: tuple[PipelineState, ...]
    asset: str | None = None
    payment: VerifiedPayment | None = None
    conversion: ConversionResult | None = None
    receipt: SettlementReceipt | None = None
    error_code: ErrorCode | None = None
    error_detail: str | None = None
    disposition: Disposition | None = None
    outbound_tx_id: str | None = None
    message: str | None = None

    @property
    def final_state(self) -> PipelineState:
        return self.states[-1]

    def to_dict(self) -> dict[str, object]:
        """Response payload for HTTP callers."""
        if self.ok and self.receipt is not None:
            payment = self.payment
            conversion = self.conversion
            return {
                "ok": True,
                "payer": self.receipt.payer,
                "amount": _plain(payment.gross_amount) if payment else None,
                "asset": self.asset,
                "outputAmount": _plain(self.receipt.output_amount),
                "rate": _plain(conversion.rate_applied) if conversion else None,
                "rateSource": conversion.rate_source.value if conversion else None,
                "tokenTx": self.receipt.outbound_tx_id,
                "msg": self.message,
            }

        payload: dict[str, object] = {
            "ok": False,
            "errorCode": self.error_code.value if self.error_code else None,
            "error": self.error_detail,
            "disposition": self.disposition.value if self.disposition else None,
        }
        if self.outbound_tx_id:
            payload["tokenTx"] = self.outbound_tx_id
        return payload


class SettlementPipeline:
    """verify → convert → execute → report, one independent run per call.

    Args:
        registry: Accepted assets.
        native_verifier: Verifier for native-coin payments.
        token_verifier: Verifier for token payments.
        converter: Rate policy.
        executor: Outbound payout executor.
        store: Idempotency guard.
        output_symbol: Display name of the output token, used in messages.
    """

    def __init__(
        self,
        *,
        registry: AssetRegistry,
        native_verifier: NativePaymentVerifier,
        token_verifier: TokenPaymentVerifier,
        converter: RateConverter,
        executor: SettlementExecutor,
        store: SettlementStore,
        output_symbol: str = "MALT",
    ) -> None:
        self._registry = registry
        self._native = native_verifier
        self._token = token_verifier
        self._converter = converter
        self._executor = executor
        self._store = store
        self._output_symbol = output_symbol
        self._inflight: set[asyncio.Task[SettlementReceipt]] = set()

    @property
    def registry(self) -> AssetRegistry:
        return self._registry

    @property
    def store(self) -> SettlementStore:
        return self._store

    async def settle_native_payment(self, reference: str) -> SettlementOutcome:
        """Settle a native-coin payment identified by ``reference``."""
        return await self._run(reference, AssetKind.NATIVE, NATIVE_SYMBOL)

    async def settle_token_payment(self, reference: str, symbol: str) -> SettlementOutcome:
        """Settle a token payment of asset ``symbol`` identified by ``reference``."""
        return await self._run(reference, AssetKind.TOKEN, symbol)

    async def wait_inflight(self) -> None:
        """Wait for shielded settlements whose callers went away."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # -----------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------

    async def _run(self, reference: str, kind: AssetKind, symbol: str) -> SettlementOutcome:
        trail = _StateTrail()
        reference = (reference or "").strip()
        symbol = (symbol or "").strip().upper()
        log = logger.bind(reference=reference, asset=symbol)

        if not reference:
            return self._reject(
                trail, reference, symbol,
                BridgeError(ErrorCode.INVALID_REQUEST, "txSignature is required"),
            )
        if not symbol:
            return self._reject(
                trail, reference, symbol,
                BridgeError(ErrorCode.INVALID_REQUEST, "asset is required"),
            )

        try:
            claim = self._store.claim(reference, kind)
        except Exception as exc:
            log.error("settlement_claim_failed", error=str(exc))
            return self._reject(
                trail, reference, symbol,
                BridgeError(
                    ErrorCode.INTERNAL_ERROR,
                    f"could not claim payment reference: {exc}",
                    disposition=Disposition.RETRYABLE,
                ),
            )
        if not claim.claimed:
            log.info("settlement_refused", outcome=claim.outcome.value)
            return self._reject(trail, reference, symbol, _refusal(reference, claim))

        payment: VerifiedPayment | None = None
        conversion: ConversionResult | None = None
        try:
            trail.advance(PipelineState.VERIFYING)
            if kind == AssetKind.NATIVE:
                payment = await self._native.verify(reference)
            else:
                payment = await self._token.verify(reference, self._registry.require(symbol))
            trail.advance(PipelineState.VERIFIED)

            trail.advance(PipelineState.CONVERTING)
            conversion = await self._converter.convert(payment)
            trail.advance(PipelineState.CONVERTED)
        except asyncio.CancelledError:
            self._release(reference, ErrorCode.INTERNAL_ERROR)
            raise
        except BridgeError as exc:
            log.info("settlement_rejected", error_code=exc.code.value, detail=exc.detail)
            self._release(reference, exc.code)
            return self._reject(trail, reference, symbol, exc, payment, conversion)
        except Exception as exc:
            log.exception("settlement_unexpected_error", stage=trail.current.value)
            self._release(reference, ErrorCode.INTERNAL_ERROR)
            error = BridgeError(
                ErrorCode.INTERNAL_ERROR,
                f"unexpected error during {trail.current.value.lower()}: {exc}",
                disposition=Disposition.RETRYABLE,
            )
            return self._reject(trail, reference, symbol, error, payment, conversion)

        trail.advance(PipelineState.SETTLING)
        task = asyncio.ensure_future(self._settle(payment, conversion))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            receipt = await asyncio.shield(task)
        except SettlementError as exc:
            return self._reject(trail, reference, symbol, exc, payment, conversion)

        trail.advance(PipelineState.SETTLED)
        return SettlementOutcome(
            reference=reference,
            ok=True,
            states=tuple(trail.states),
            asset=payment.symbol,
            payment=payment,
            conversion=conversion,
            receipt=receipt,
            message=f"Payment verified and {self._output_symbol} sent.",
        )

    async def _settle(
        self, payment: VerifiedPayment, conversion: ConversionResult
    ) -> SettlementReceipt:
        """Execute the payout and record its outcome. Runs shielded."""
        reference = payment.reference
        log = logger.bind(reference=reference, payer=payment.payer)
        try:
            receipt = await self._executor.execute(
                payment.payer, conversion.output_amount, reference=reference
            )
        except SettlementError as exc:
            if exc.disposition == Disposition.UNCERTAIN:
                log.error(
                    "settlement_uncertain",
                    error_code=exc.code.value,
                    tx_id=exc.outbound_tx_id,
                )
                self._park(reference, exc.code, exc.outbound_tx_id)
            else:
                log.warning("settlement_failed", error_code=exc.code.value, detail=exc.detail)
                self._release(reference, exc.code)
            raise
        except Exception as exc:
            log.exception("settlement_unexpected_error", stage=PipelineState.SETTLING.value)
            self._park(reference, ErrorCode.INTERNAL_ERROR, None)
            raise SettlementError(
                ErrorCode.INTERNAL_ERROR,
                f"unexpected error during settlement: {exc}",
                disposition=Disposition.UNCERTAIN,
            ) from exc

        try:
            self._store.complete(reference, receipt)
        except Exception as exc:
            # The payout is confirmed; the row stays CLAIMED and keeps refusing.
            log.error("settlement_record_failed", tx_id=receipt.outbound_tx_id, error=str(exc))
        log.info("settlement_completed", tx_id=receipt.outbound_tx_id)
        return receipt

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    def _release(self, reference: str, code: ErrorCode) -> None:
        try:
            self._store.release(reference, code.value)
        except Exception as exc:
            logger.error("settlement_release_failed", reference=reference, error=str(exc))

    def _park(self, reference: str, code: ErrorCode, outbound_tx_id: str | None) -> None:
        try:
            self._store.mark_uncertain(reference, code.value, outbound_tx_id=outbound_tx_id)
        except Exception as exc:
            logger.error("settlement_park_failed", reference=reference, error=str(exc))

    @staticmethod
    def _reject(
        trail: _StateTrail,
        reference: str,
        symbol: str,
        error: BridgeError,
        payment: VerifiedPayment | None = None,
        conversion: ConversionResult | None = None,
    ) -> SettlementOutcome:
        trail.advance(PipelineState.REJECTED)
        return SettlementOutcome(
            reference=reference,
            ok=False,
            states=tuple(trail.states),
            asset=symbol or None,
            payment=payment,
            conversion=conversion,
            error_code=error.code,
            error_detail=error.detail,
            disposition=error.disposition,
            outbound_tx_id=getattr(error, "outbound_tx_id", None),
        )


def _plain(value: Decimal) -> str:
    """Fixed-point rendering without trailing zeros: 500000.000 → "500000"."""
    return format(value.normalize(), "f")


def _refusal(reference: str, claim: ClaimResult) -> BridgeError:
    record = claim.record
    if claim.outcome == ClaimOutcome.ALREADY_SETTLED:
        tx_id = record.outbound_tx_id if record else None
        return BridgeError(
            ErrorCode.ALREADY_SETTLED,
            f"payment {reference} was already settled (tx {tx_id})",
        )
    if claim.outcome == ClaimOutcome.UNCERTAIN:
        return BridgeError(
            ErrorCode.SETTLEMENT_UNCERTAIN,
            f"payment {reference} has an unreconciled settlement attempt",
        )
    return BridgeError(
        ErrorCode.SETTLEMENT_IN_PROGRESS,
        f"payment {reference} is already being settled",
    )
