"""
Treasury bridge — verify inbound Solana payments and pay out the output token.

A caller hands in a transaction signature. The pipeline verifies that the
transaction paid the treasury, converts the amount under the configured
rate policy, transfers the output token to the payer and returns a
receipt once the transfer is confirmed.
"""

from treasury_bridge.errors import BridgeError, Disposition, ErrorCode
from treasury_bridge.models import (
    AssetKind,
    AssetRegistry,
    AssetSpec,
    ConversionResult,
    RateSource,
    SettlementReceipt,
    VerifiedPayment,
)
from treasury_bridge.pipeline import PipelineState, SettlementOutcome, SettlementPipeline

__version__ = "0.1.0"

__all__ = [
    "AssetKind",
    "AssetRegistry",
    "AssetSpec",
    "BridgeError",
    "ConversionResult",
    "Disposition",
    "ErrorCode",
    "PipelineState",
    "RateSource",
    "SettlementOutcome",
    "SettlementPipeline",
    "SettlementReceipt",
    "VerifiedPayment",
    "__version__",
]
