"""
Value types flowing through the settlement pipeline.

    VerifiedPayment   — produced only by a verifier, consumed once by the converter.
    ConversionResult  — deterministic function of a payment and the rate policy.
    SettlementReceipt — exists only after the outbound transfer is confirmed.
                        Its presence is the proof of payout.
    AssetSpec / AssetRegistry — read-only configuration of accepted assets.

All types are frozen. Amounts are ``Decimal``; raw ledger amounts are ``int``.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any

from treasury_bridge.errors import ErrorCode, VerificationError

# Native coin symbol and precision (lamports per SOL = 10**9).
NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9


class AssetKind(StrEnum):
    NATIVE = "NATIVE"
    TOKEN = "TOKEN"


class RateSource(StrEnum):
    FIXED = "FIXED"
    LIVE = "LIVE"
    FALLBACK = "FALLBACK"


def raw_to_decimal(raw_amount: int, decimals: int) -> Decimal:
    """Exact conversion of a smallest-unit integer to a human amount."""
    return Decimal(raw_amount).scaleb(-decimals)


@dataclass(frozen=True)
class VerifiedPayment:
    """A payment proven to have reached the treasury.

    Attributes:
        reference: Transaction signature the payment was verified against.
        payer: Base58 address of the transaction's fee payer (first signer).
        kind: NATIVE or TOKEN.
        symbol: Registry symbol of the paid asset ("SOL", "USDC", ...).
        raw_amount: Amount in the asset's smallest unit.
        precision: Decimal places of the asset.
        gross_amount: ``raw_amount`` scaled by ``precision``.
    """

    reference: str
    payer: str
    kind: AssetKind
    symbol: str
    raw_amount: int
    precision: int
    gross_amount: Decimal

    def __post_init__(self) -> None:
        if self.raw_amount <= 0 or not self.gross_amount.is_finite() or self.gross_amount <= 0:
            raise VerificationError(
                ErrorCode.INVALID_AMOUNT,
                f"payment amount must be positive, got {self.gross_amount}",
            )
        if self.precision < 0:
            raise ValueError(f"precision must be >= 0, got: {self.precision}")


@dataclass(frozen=True)
class ConversionResult:
    output_amount: Decimal
    rate_applied: Decimal
    rate_source: RateSource


@dataclass(frozen=True)
class SettlementReceipt:
    """Durable outcome of a confirmed payout.

    Attributes:
        reference: Inbound payment reference that was settled.
        payer: Recipient of the output tokens.
        output_amount: Human-readable output amount requested.
        raw_units: Smallest units actually transferred (truncated).
        outbound_tx_id: Signature of the confirmed outbound transfer.
        payer_token_account: The payer's output-token account.
        created_accounts: Token accounts created as part of the transfer.
        confirmed_at: RFC3339 UTC timestamp of confirmation.
    """

    reference: str
    payer: str
    output_amount: Decimal
    raw_units: int
    outbound_tx_id: str
    payer_token_account: str
    confirmed_at: str
    created_accounts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "reference": self.reference,
            "payer": self.payer,
            "output_amount": format(self.output_amount, "f"),
            "raw_units": self.raw_units,
            "outbound_tx_id": self.outbound_tx_id,
            "payer_token_account": self.payer_token_account,
            "confirmed_at": self.confirmed_at,
            "created_accounts": list(self.created_accounts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SettlementReceipt:
        return cls(
            reference=data["reference"],
            payer=data["payer"],
            output_amount=Decimal(data["output_amount"]),
            raw_units=int(data["raw_units"]),
            outbound_tx_id=data["outbound_tx_id"],
            payer_token_account=data["payer_token_account"],
            confirmed_at=data["confirmed_at"],
            created_accounts=tuple(data.get("created_accounts", ())),
        )


@dataclass(frozen=True)
class AssetSpec:
    """An accepted payment asset.

    Attributes:
        symbol: Upper-case registry key.
        kind: NATIVE or TOKEN.
        mint: Token mint address. None for the native coin.
        destination: Accepted receiving account. The treasury address for
            the native coin, the treasury's associated token account
            for tokens.
        fixed_rate: Output tokens per unit of this asset, if fixed.
        fallback_rate: Rate used when the live quote is unavailable.
        quote_pair: Feed pair for a live quote ("solana/usd").
    """

    symbol: str
    kind: AssetKind
    destination: str
    mint: str | None = None
    fixed_rate: Decimal | None = None
    fallback_rate: Decimal | None = None
    quote_pair: str | None = None

    def __post_init__(self) -> None:
        if self.kind == AssetKind.TOKEN and not self.mint:
            raise ValueError(f"token asset {self.symbol!r} requires a mint")
        for name in ("fixed_rate", "fallback_rate"):
            value = getattr(self, name)
            if value is not None and (not value.is_finite() or value <= 0):
                raise ValueError(f"{name} for {self.symbol!r} must be positive, got: {value}")


@dataclass(frozen=True)
class AssetRegistry(Mapping[str, AssetSpec]):
    """Read-only symbol → AssetSpec mapping. Lookups ignore case."""

    assets: Mapping[str, AssetSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized = {symbol.upper(): spec for symbol, spec in self.assets.items()}
        object.__setattr__(self, "assets", normalized)

    def __getitem__(self, symbol: str) -> AssetSpec:
        return self.assets[symbol.upper()]

    def __iter__(self) -> Iterator[str]:
        return iter(self.assets)

    def __len__(self) -> int:
        return len(self.assets)

    def require(self, symbol: str) -> AssetSpec:
        """Look up an asset or fail with UNSUPPORTED_ASSET."""
        spec = self.assets.get(symbol.upper())
        if spec is None:
            raise VerificationError(
                ErrorCode.UNSUPPORTED_ASSET,
                f"asset {symbol!r} is not accepted",
            )
        return spec

    @property
    def native(self) -> AssetSpec:
        return self.require(NATIVE_SYMBOL)

    def token_mints(self) -> list[str]:
        return [spec.mint for spec in self.assets.values() if spec.mint is not None]
