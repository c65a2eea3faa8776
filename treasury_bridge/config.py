"""
Configuration — environment-backed settings and pipeline wiring.

Settings are read once from the environment (and an optional ``.env``
file) and are read-only afterwards. ``build_pipeline`` turns them into a
fully wired SettlementPipeline and fails fast with ConfigurationError
when the receiving address, the treasury credential or the output mint
is missing or malformed.

Accepted token assets are configured as JSON in ``ACCEPTED_ASSETS``:

    {"USDC": {"mint": "<base58>", "fixed_rate": "2", "fallback_rate": "2",
              "quote_pair": "usd-coin/usd"}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

import jsonschema
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from treasury_bridge.errors import ConfigurationError
from treasury_bridge.ledger.accounts import derive_token_account, parse_address
from treasury_bridge.ledger.client import LedgerClient
from treasury_bridge.ledger.jsonrpc_client import SolanaJsonRpcClient
from treasury_bridge.ledger.signer import TreasuryIdentity
from treasury_bridge.ledger.transport import HttpxTransport
from treasury_bridge.models import (
    NATIVE_SYMBOL,
    AssetKind,
    AssetRegistry,
    AssetSpec,
)
from treasury_bridge.pipeline import SettlementPipeline
from treasury_bridge.rates import CoinGeckoRateFeed, RateConverter
from treasury_bridge.settlement import SettlementExecutor
from treasury_bridge.store import SettlementStore
from treasury_bridge.verification import NativePaymentVerifier, TokenPaymentVerifier

_RATE_PATTERN = r"^[0-9]+(\.[0-9]+)?$"

ACCEPTED_ASSETS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "propertyNames": {"pattern": "^[A-Za-z0-9]{1,16}$"},
    "additionalProperties": {
        "type": "object",
        "required": ["mint"],
        "additionalProperties": False,
        "properties": {
            "mint": {"type": "string", "minLength": 32, "maxLength": 44},
            "fixed_rate": {"type": "string", "pattern": _RATE_PATTERN},
            "fallback_rate": {"type": "string", "pattern": _RATE_PATTERN},
            "quote_pair": {"type": "string", "pattern": "^[a-z0-9-]+/[a-z]+$"},
        },
    },
}


class BridgeSettings(BaseSettings):
    """Service settings loaded from environment variables."""

    # Ledger
    rpc_url: str = Field(default="https://api.devnet.solana.com", description="Solana JSON-RPC URL")
    ledger_timeout_s: float = Field(default=30.0, gt=0, description="Per-call ledger timeout")
    confirmation_timeout_s: float = Field(
        default=60.0, gt=0, description="Wall-clock bound on awaiting confirmation"
    )
    confirmation_poll_interval_s: float = Field(
        default=1.0, gt=0, description="Delay between confirmation polls"
    )

    # Treasury
    receiver_address: str = Field(default="", description="Treasury wallet receiving payments")
    treasury_private_key: SecretStr | None = Field(
        default=None, description="Treasury signing key (JSON byte array or base58)"
    )

    # Output token
    malt_mint: str = Field(default="", description="Mint of the output token")
    token_decimals: int = Field(default=9, ge=0, le=18, description="Output token precision")

    # Rates
    rate_malt_per_sol: Decimal | None = Field(
        default=Decimal("200000"), description="Fixed output tokens per SOL; empty for live rates"
    )
    max_sol_per_purchase: Decimal = Field(
        default=Decimal("100"), gt=0, description="Cap on a single native payment"
    )
    native_fallback_rate: Decimal | None = Field(
        default=None, description="Native rate used when no live quote is available"
    )
    native_quote_pair: str | None = Field(default=None, description="Feed pair, e.g. solana/usd")
    output_unit_price: Decimal | None = Field(
        default=None, description="Reference-currency price of one output token"
    )
    price_feed_url: str = Field(
        default="https://api.coingecko.com/api/v3", description="Live quote API root"
    )
    accepted_assets: str = Field(default="{}", description="Accepted token assets (JSON)")

    # Storage
    settlement_db_path: str = Field(
        default="settlements.db", description="SQLite idempotency store (or :memory:)"
    )

    # HTTP
    cors_origin: str = Field(default="http://localhost:5173", description="Allowed CORS origin")
    port: int = Field(default=3000, description="HTTP port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("rate_malt_per_sol", "native_fallback_rate", "output_unit_price")
    @classmethod
    def validate_positive(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and (not v.is_finite() or v <= 0):
            raise ValueError("must be a positive number")
        return v

    @field_validator(
        "rate_malt_per_sol",
        "native_fallback_rate",
        "native_quote_pair",
        "output_unit_price",
        mode="before",
    )
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


@lru_cache()
def get_settings() -> BridgeSettings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return BridgeSettings()


# =========================================================================
# Wiring
# =========================================================================


def parse_accepted_assets(raw: str) -> dict[str, dict[str, str]]:
    """Parse and validate the ``ACCEPTED_ASSETS`` JSON document.

    Raises:
        ConfigurationError: If the document is not valid JSON or does not
            match ACCEPTED_ASSETS_SCHEMA.
    """
    try:
        document = json.loads(raw or "{}")
        jsonschema.validate(instance=document, schema=ACCEPTED_ASSETS_SCHEMA)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"ACCEPTED_ASSETS is not valid JSON: {exc.msg}") from exc
    except jsonschema.ValidationError as exc:
        raise ConfigurationError(f"ACCEPTED_ASSETS is invalid: {exc.message}") from exc
    return document


def build_registry(settings: BridgeSettings) -> AssetRegistry:
    """Build the accepted-asset registry: the native coin plus configured tokens.

    Raises:
        ConfigurationError: On a missing receiving address, a malformed mint
            or a token without any rate source.
    """
    receiver = _require_address(settings.receiver_address, "RECEIVER_ADDRESS")

    assets: dict[str, AssetSpec] = {
        NATIVE_SYMBOL: AssetSpec(
            symbol=NATIVE_SYMBOL,
            kind=AssetKind.NATIVE,
            destination=receiver,
            fixed_rate=settings.rate_malt_per_sol,
            fallback_rate=settings.native_fallback_rate,
            quote_pair=settings.native_quote_pair,
        )
    }

    # tokens without their own source can still cross through the native rate
    native_cross = (
        settings.rate_malt_per_sol is not None and settings.native_quote_pair is not None
    )

    for symbol, entry in parse_accepted_assets(settings.accepted_assets).items():
        key = symbol.upper()
        if key == NATIVE_SYMBOL:
            raise ConfigurationError(f"ACCEPTED_ASSETS cannot redefine {NATIVE_SYMBOL}")
        mint = _require_address(entry["mint"], f"ACCEPTED_ASSETS.{key}.mint")
        try:
            spec = AssetSpec(
                symbol=key,
                kind=AssetKind.TOKEN,
                destination=derive_token_account(receiver, mint),
                mint=mint,
                fixed_rate=_decimal_or_none(entry.get("fixed_rate")),
                fallback_rate=_decimal_or_none(entry.get("fallback_rate")),
                quote_pair=entry.get("quote_pair"),
            )
        except ValueError as exc:
            raise ConfigurationError(f"ACCEPTED_ASSETS.{key}: {exc}") from exc
        if (
            spec.fixed_rate is None
            and spec.fallback_rate is None
            and spec.quote_pair is None
            and not native_cross
        ):
            raise ConfigurationError(f"ACCEPTED_ASSETS.{key} has no rate source")
        assets[key] = spec

    return AssetRegistry(assets)


@dataclass(frozen=True)
class BridgeComponents:
    """Everything the service needs, wired once at startup."""

    pipeline: SettlementPipeline
    client: LedgerClient
    identity: TreasuryIdentity
    registry: AssetRegistry
    receiver_address: str


def build_components(
    settings: BridgeSettings,
    *,
    client: LedgerClient | None = None,
    store: SettlementStore | None = None,
) -> BridgeComponents:
    """Wire the pipeline and its collaborators from settings.

    Args:
        settings: Loaded settings.
        client: Ledger client override. Built from ``rpc_url`` by default.
        store: Idempotency store override. Opened at ``settlement_db_path``
            by default.

    Raises:
        ConfigurationError: If required configuration is missing or malformed.
    """
    registry = build_registry(settings)
    receiver = registry.native.destination
    output_mint = _require_address(settings.malt_mint, "MALT_MINT")
    secret = settings.treasury_private_key
    identity = TreasuryIdentity.from_secret(secret.get_secret_value() if secret else None)

    if client is None:
        client = SolanaJsonRpcClient(
            settings.rpc_url,
            HttpxTransport(timeout=settings.ledger_timeout_s),
            confirmation_timeout=settings.confirmation_timeout_s,
            poll_interval=settings.confirmation_poll_interval_s,
        )
    quoted = any(registry[symbol].quote_pair for symbol in registry)
    feed = CoinGeckoRateFeed(settings.price_feed_url) if quoted else None

    pipeline = SettlementPipeline(
        registry=registry,
        native_verifier=NativePaymentVerifier(client, receiver, settings.max_sol_per_purchase),
        token_verifier=TokenPaymentVerifier(client, receiver),
        converter=RateConverter(
            registry, feed=feed, output_unit_price=settings.output_unit_price
        ),
        executor=SettlementExecutor(
            client,
            identity,
            output_mint=output_mint,
            output_decimals=settings.token_decimals,
        ),
        store=store or SettlementStore(settings.settlement_db_path),
    )
    return BridgeComponents(
        pipeline=pipeline,
        client=client,
        identity=identity,
        registry=registry,
        receiver_address=receiver,
    )


def build_pipeline(
    settings: BridgeSettings,
    *,
    client: LedgerClient | None = None,
    store: SettlementStore | None = None,
) -> SettlementPipeline:
    """Wire a SettlementPipeline from settings.

    Raises:
        ConfigurationError: If required configuration is missing or malformed.
    """
    return build_components(settings, client=client, store=store).pipeline


def _require_address(value: str | None, name: str) -> str:
    if not value or not value.strip():
        raise ConfigurationError(f"missing {name}")
    try:
        parse_address(value.strip(), name=name)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    return value.strip()


def _decimal_or_none(value: str | None) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ConfigurationError(f"invalid rate {value!r}") from exc
