"""
Rate conversion — verified payment amount → output-token amount.

Policy, in priority order, per asset:

    1. Fixed rate configured          → rate_source = FIXED
    2. Live quote available           → rate_source = LIVE (see below)
    3. Fallback rate configured       → rate_source = FALLBACK
    4. Otherwise                      → RATE_UNAVAILABLE (never guess)

Live rates for tokens are cross rates through the native coin. The
native fixed rate (output tokens per SOL) divided by the live SOL quote in
the reference currency gives output tokens per unit of that currency:

    rate = floor(native_fixed_rate / quote)      200000 / 150 → 1333

The quote pair is the token's own ``quote_pair``, else the native one.
A native asset without a fixed rate can take a live rate only when
``output_unit_price`` (reference-currency price of one output token) is
configured: ``rate = floor(quote / output_unit_price)``.

All arithmetic is Decimal. Given the same payment and the same rate
inputs, ``convert`` always returns the same result.
"""

from __future__ import annotations

import decimal
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from treasury_bridge.errors import ConversionError, ErrorCode
from treasury_bridge.models import (
    NATIVE_SYMBOL,
    AssetKind,
    AssetRegistry,
    AssetSpec,
    ConversionResult,
    RateSource,
    VerifiedPayment,
)

logger = structlog.get_logger(__name__)


# =========================================================================
# Rate feed
# =========================================================================


@runtime_checkable
class RateFeed(Protocol):
    """Source of live spot quotes."""

    async def get_spot_quote(self, pair: str) -> Decimal | None:
        """Spot price for ``pair`` ("<feed-id>/<currency>"), or None if unavailable."""
        ...


class CoinGeckoRateFeed:
    """RateFeed backed by the CoinGecko ``simple/price`` endpoint.

    Pairs are written "<coin-id>/<currency>", e.g. "solana/usd".
    Any transport or parse failure is reported as unavailable (None).

    Args:
        base_url: API root, e.g. "https://api.coingecko.com/api/v3".
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def get_spot_quote(self, pair: str) -> Decimal | None:
        coin_id, _, currency = pair.partition("/")
        currency = currency or "usd"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    f"{self._base_url}/simple/price",
                    params={"ids": coin_id, "vs_currencies": currency},
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                data: dict[str, Any] = response.json()
            quote = Decimal(str(data[coin_id][currency]))
        except (httpx.HTTPError, KeyError, TypeError, ValueError, ArithmeticError) as exc:
            logger.warning("rate_quote_unavailable", pair=pair, error=str(exc))
            return None

        if not quote.is_finite() or quote <= 0:
            logger.warning("rate_quote_unavailable", pair=pair, error=f"bad quote {quote}")
            return None
        return quote


# =========================================================================
# Converter
# =========================================================================


class RateConverter:
    """Applies the rate policy of the asset registry.

    Args:
        registry: Accepted assets with their fixed/fallback rates and quote pairs.
        feed: Optional live quote source.
        output_unit_price: Reference-currency price of one output token.
            Only needed for live native rates; token live rates are
            derived from the native fixed rate.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        *,
        feed: RateFeed | None = None,
        output_unit_price: Decimal | None = None,
    ) -> None:
        if output_unit_price is not None and (
            not output_unit_price.is_finite() or output_unit_price <= 0
        ):
            raise ValueError(f"output_unit_price must be positive, got: {output_unit_price}")
        self._registry = registry
        self._feed = feed
        self._output_unit_price = output_unit_price

    async def convert(self, payment: VerifiedPayment) -> ConversionResult:
        """Compute the output amount for ``payment``.

        Raises:
            ConversionError: RATE_UNAVAILABLE if no rate can be determined.
        """
        asset = self._registry.get(payment.symbol)
        if asset is None:
            raise ConversionError(
                ErrorCode.RATE_UNAVAILABLE, f"no rate policy for {payment.symbol}"
            )

        rate, source = await self._resolve_rate(asset)
        with decimal.localcontext() as ctx:
            ctx.prec = 60
            output = payment.gross_amount * rate

        result = ConversionResult(output_amount=output, rate_applied=rate, rate_source=source)
        logger.info(
            "payment_converted",
            reference=payment.reference,
            asset=asset.symbol,
            rate=str(rate),
            rate_source=source.value,
            output_amount=str(output),
        )
        return result

    async def _resolve_rate(self, asset: AssetSpec) -> tuple[Decimal, RateSource]:
        if asset.fixed_rate is not None:
            return asset.fixed_rate, RateSource.FIXED

        live = await self._live_rate(asset)
        if live is not None:
            return live, RateSource.LIVE

        if asset.fallback_rate is not None:
            logger.warning("rate_fallback_used", asset=asset.symbol, rate=str(asset.fallback_rate))
            return asset.fallback_rate, RateSource.FALLBACK

        raise ConversionError(
            ErrorCode.RATE_UNAVAILABLE,
            f"no live quote and no fallback rate for {asset.symbol}",
        )

    async def _live_rate(self, asset: AssetSpec) -> Decimal | None:
        if self._feed is None:
            return None
        if asset.kind == AssetKind.NATIVE:
            if asset.quote_pair is None or self._output_unit_price is None:
                return None
            pair = asset.quote_pair
            numerator: Decimal | None = None
        else:
            native = self._registry.get(NATIVE_SYMBOL)
            if native is None or native.fixed_rate is None:
                return None
            pair = asset.quote_pair or native.quote_pair
            if pair is None:
                return None
            numerator = native.fixed_rate

        try:
            quote = await self._feed.get_spot_quote(pair)
        except Exception as exc:
            logger.warning("rate_quote_unavailable", pair=pair, error=str(exc))
            return None
        if quote is None or not quote.is_finite() or quote <= 0:
            return None

        with decimal.localcontext() as ctx:
            ctx.prec = 60
            if numerator is None:
                assert self._output_unit_price is not None
                exact = quote / self._output_unit_price
            else:
                # output tokens per SOL / currency per SOL = output tokens per currency unit
                exact = numerator / quote
            rate = exact.to_integral_value(rounding=ROUND_FLOOR)
        if rate <= 0:
            return None
        return rate
