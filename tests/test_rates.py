"""
Tests for RateConverter and CoinGeckoRateFeed.

Test plan:
- Fixed rate: 2.5 SOL at 200000 → 500000, feed never consulted
- Token: 1.0 USDC at rate 2 → 2.0
- Live token rate: floor(native fixed rate / SOL quote), 200000 / 150 → 1333,
  own quote pair or the native one, no output unit price needed
- Live native rate: floor(quote / output_unit_price), only with a unit price
- Fallback when the feed is down, raises, or derives a zero rate
- RATE_UNAVAILABLE with no fixed, live or fallback rate
- Determinism: same inputs → same result
- CoinGecko feed: parses simple/price, HTTP error and missing key → None
"""

from decimal import Decimal

import httpx
import pytest
from pytest_httpx import HTTPXMock

from fakes import PAYER, FakeRateFeed, make_registry

from treasury_bridge.errors import ConversionError, Disposition, ErrorCode
from treasury_bridge.models import AssetKind, RateSource, VerifiedPayment
from treasury_bridge.rates import CoinGeckoRateFeed, RateConverter

SOL_PAIR = "solana/usd"


def _sol_payment(lamports: int = 2_500_000_000) -> VerifiedPayment:
    return VerifiedPayment(
        reference="ref-sol",
        payer=PAYER,
        kind=AssetKind.NATIVE,
        symbol="SOL",
        raw_amount=lamports,
        precision=9,
        gross_amount=Decimal(lamports).scaleb(-9),
    )


def _usdc_payment(raw: int = 1_000_000) -> VerifiedPayment:
    return VerifiedPayment(
        reference="ref-usdc",
        payer=PAYER,
        kind=AssetKind.TOKEN,
        symbol="USDC",
        raw_amount=raw,
        precision=6,
        gross_amount=Decimal(raw).scaleb(-6),
    )


class TestFixedRate:
    @pytest.mark.asyncio
    async def test_native_fixed_rate(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("150")})
        converter = RateConverter(
            make_registry(native_pair=SOL_PAIR), feed=feed, output_unit_price=Decimal("0.001")
        )

        result = await converter.convert(_sol_payment())

        assert result.output_amount == Decimal("500000")
        assert result.rate_applied == Decimal("200000")
        assert result.rate_source == RateSource.FIXED
        assert feed.calls == []

    @pytest.mark.asyncio
    async def test_token_fixed_rate(self) -> None:
        result = await RateConverter(make_registry()).convert(_usdc_payment())

        assert result.output_amount == Decimal("2.0")
        assert result.rate_source == RateSource.FIXED

    @pytest.mark.asyncio
    async def test_deterministic(self) -> None:
        converter = RateConverter(make_registry())
        first = await converter.convert(_sol_payment(123_456_789))
        second = await converter.convert(_sol_payment(123_456_789))
        assert first == second
        assert first.output_amount == Decimal("24691.3578")


class TestNativeLiveRate:
    @pytest.mark.asyncio
    async def test_live_rate_floors(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("150.55")})
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR),
            feed=feed,
            output_unit_price=Decimal("0.00075"),
        )

        result = await converter.convert(_sol_payment(1_000_000_000))

        # 150.55 / 0.00075 = 200733.33...
        assert result.rate_applied == Decimal("200733")
        assert result.output_amount == Decimal("200733")
        assert result.rate_source == RateSource.LIVE
        assert feed.calls == [SOL_PAIR]

    @pytest.mark.asyncio
    async def test_fallback_when_quote_missing(self) -> None:
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR,
                          native_fallback=Decimal("180000")),
            feed=FakeRateFeed({}),
            output_unit_price=Decimal("0.00075"),
        )

        result = await converter.convert(_sol_payment(1_000_000_000))

        assert result.rate_applied == Decimal("180000")
        assert result.rate_source == RateSource.FALLBACK

    @pytest.mark.asyncio
    async def test_fallback_when_feed_raises(self) -> None:
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR,
                          native_fallback=Decimal("180000")),
            feed=FakeRateFeed(should_raise=RuntimeError("boom")),
            output_unit_price=Decimal("0.00075"),
        )
        result = await converter.convert(_sol_payment())
        assert result.rate_source == RateSource.FALLBACK

    @pytest.mark.asyncio
    async def test_zero_derived_rate_counts_as_unavailable(self) -> None:
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR,
                          native_fallback=Decimal("7")),
            feed=FakeRateFeed({SOL_PAIR: Decimal("0.0001")}),
            output_unit_price=Decimal("1"),
        )
        result = await converter.convert(_sol_payment())
        assert result.rate_source == RateSource.FALLBACK

    @pytest.mark.asyncio
    async def test_no_unit_price_disables_live(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("150")})
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR,
                          native_fallback=Decimal("5")),
            feed=feed,
        )
        result = await converter.convert(_sol_payment())
        assert result.rate_source == RateSource.FALLBACK
        assert feed.calls == []

    def test_non_positive_unit_price_rejected(self) -> None:
        with pytest.raises(ValueError):
            RateConverter(make_registry(), output_unit_price=Decimal("0"))


class TestTokenLiveRate:
    @pytest.mark.asyncio
    async def test_cross_rate_through_native(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("150")})
        converter = RateConverter(
            make_registry(usdc_rate=None, usdc_pair=SOL_PAIR), feed=feed
        )

        result = await converter.convert(_usdc_payment())

        # 200000 tokens/SOL / 150 USD/SOL = 1333.33 tokens/USD
        assert result.rate_applied == Decimal("1333")
        assert result.output_amount == Decimal("1333")
        assert result.rate_source == RateSource.LIVE
        assert feed.calls == [SOL_PAIR]

    @pytest.mark.asyncio
    async def test_unit_price_does_not_affect_tokens(self) -> None:
        converter = RateConverter(
            make_registry(usdc_rate=None, usdc_pair=SOL_PAIR),
            feed=FakeRateFeed({SOL_PAIR: Decimal("150")}),
            output_unit_price=Decimal("0.00075"),
        )

        result = await converter.convert(_usdc_payment(2_500_000))

        assert result.rate_applied == Decimal("1333")
        assert result.output_amount == Decimal("3332.5")

    @pytest.mark.asyncio
    async def test_native_pair_used_when_token_has_none(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("160")})
        converter = RateConverter(
            make_registry(usdc_rate=None, native_pair=SOL_PAIR), feed=feed
        )

        result = await converter.convert(_usdc_payment())

        assert result.rate_applied == Decimal("1250")
        assert feed.calls == [SOL_PAIR]

    @pytest.mark.asyncio
    async def test_no_native_rate_falls_back(self) -> None:
        feed = FakeRateFeed({SOL_PAIR: Decimal("150")})
        converter = RateConverter(
            make_registry(native_rate=None, usdc_rate=None, usdc_pair=SOL_PAIR,
                          usdc_fallback=Decimal("1000")),
            feed=feed,
        )

        result = await converter.convert(_usdc_payment())

        assert result.rate_source == RateSource.FALLBACK
        assert feed.calls == []

    @pytest.mark.asyncio
    async def test_zero_cross_rate_is_unavailable(self) -> None:
        converter = RateConverter(
            make_registry(usdc_rate=None, usdc_pair=SOL_PAIR),
            feed=FakeRateFeed({SOL_PAIR: Decimal("300000")}),
        )

        with pytest.raises(ConversionError) as exc_info:
            await converter.convert(_usdc_payment())

        assert exc_info.value.code == ErrorCode.RATE_UNAVAILABLE


class TestRateUnavailable:
    @pytest.mark.asyncio
    async def test_no_rate_source(self) -> None:
        converter = RateConverter(
            make_registry(native_rate=None, native_pair=SOL_PAIR),
            feed=FakeRateFeed({}),
            output_unit_price=Decimal("0.001"),
        )

        with pytest.raises(ConversionError) as exc_info:
            await converter.convert(_sol_payment())

        assert exc_info.value.code == ErrorCode.RATE_UNAVAILABLE
        assert exc_info.value.disposition == Disposition.RETRYABLE

    @pytest.mark.asyncio
    async def test_asset_without_policy(self) -> None:
        payment = VerifiedPayment(
            reference="ref-x", payer=PAYER, kind=AssetKind.TOKEN, symbol="BONK",
            raw_amount=1, precision=0, gross_amount=Decimal("1"),
        )
        with pytest.raises(ConversionError) as exc_info:
            await RateConverter(make_registry()).convert(payment)
        assert exc_info.value.code == ErrorCode.RATE_UNAVAILABLE


class TestCoinGeckoRateFeed:
    BASE = "https://api.coingecko.test/api/v3"

    @pytest.mark.asyncio
    async def test_parses_quote(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=f"{self.BASE}/simple/price?ids=solana&vs_currencies=usd",
            json={"solana": {"usd": 151.23}},
        )

        quote = await CoinGeckoRateFeed(self.BASE).get_spot_quote(SOL_PAIR)

        assert quote == Decimal("151.23")

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(status_code=503)
        assert await CoinGeckoRateFeed(self.BASE).get_spot_quote(SOL_PAIR) is None

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        assert await CoinGeckoRateFeed(self.BASE).get_spot_quote(SOL_PAIR) is None

    @pytest.mark.asyncio
    async def test_missing_coin_is_unavailable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(json={})
        assert await CoinGeckoRateFeed(self.BASE).get_spot_quote(SOL_PAIR) is None

    @pytest.mark.asyncio
    async def test_zero_quote_is_unavailable(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(json={"solana": {"usd": 0}})
        assert await CoinGeckoRateFeed(self.BASE).get_spot_quote(SOL_PAIR) is None
