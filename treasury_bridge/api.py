"""
HTTP surface.

    GET  /api/health          liveness
    POST /api/purchase        settle a native-coin payment   {txSignature}
    POST /api/purchase-token  settle a token payment         {txSignature, asset}

The pipeline does all the work; this layer only maps outcomes to status
codes:

    200  settled
    400  payment rejected, or malformed request
    409  reference already settled or being settled
    502  settlement uncertain (reconcile before anything else)
    503  retryable (not confirmed yet, ledger or rate source unavailable)
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from treasury_bridge.config import BridgeComponents, BridgeSettings, build_components, get_settings
from treasury_bridge.errors import Disposition, ErrorCode
from treasury_bridge.pipeline import SettlementOutcome, SettlementPipeline
from treasury_bridge.provisioning import provision_treasury_accounts

logger = structlog.get_logger(__name__)

SERVICE_NAME = "malt-backend"

_CONFLICT_CODES = frozenset({ErrorCode.ALREADY_SETTLED, ErrorCode.SETTLEMENT_IN_PROGRESS})


class PurchaseRequest(BaseModel):
    """Body of ``POST /api/purchase``."""

    txSignature: str | None = Field(default=None, description="Inbound payment signature")


class TokenPurchaseRequest(BaseModel):
    """Body of ``POST /api/purchase-token``."""

    txSignature: str | None = Field(default=None, description="Inbound payment signature")
    asset: str | None = Field(default=None, description="Accepted asset symbol, e.g. USDC")


def status_for(outcome: SettlementOutcome) -> int:
    """HTTP status code for a pipeline outcome."""
    if outcome.ok:
        return status.HTTP_200_OK
    if outcome.error_code in _CONFLICT_CODES:
        return status.HTTP_409_CONFLICT
    if outcome.disposition == Disposition.UNCERTAIN:
        return status.HTTP_502_BAD_GATEWAY
    if outcome.disposition == Disposition.RETRYABLE:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


async def _provision(components: BridgeComponents) -> None:
    """Best-effort creation of the receiving token accounts."""
    mints = components.registry.token_mints()
    if not mints:
        return
    try:
        created = await provision_treasury_accounts(
            components.client,
            components.identity,
            components.receiver_address,
            mints,
        )
    except Exception as exc:
        logger.warning("treasury_provisioning_failed", error=str(exc))
        return
    if created:
        logger.info("treasury_provisioned", accounts=created)


def create_app(
    settings: BridgeSettings | None = None,
    components: BridgeComponents | None = None,
    *,
    provision: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use. Defaults to ``get_settings()``.
        components: Pre-wired components. Built from settings at startup
            when omitted; a ConfigurationError then aborts startup.
        provision: Run treasury provisioning during startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        wired = components or build_components(settings)
        app.state.components = wired
        logger.info(
            "application_startup",
            receiver=wired.receiver_address,
            treasury=wired.identity.address,
            assets=sorted(wired.registry),
        )
        if provision:
            await _provision(wired)

        yield

        await wired.pipeline.wait_inflight()
        logger.info("application_shutdown")

    app = FastAPI(title="Treasury Bridge", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "ok": False,
                "errorCode": ErrorCode.INVALID_REQUEST.value,
                "error": "Malformed request body",
                "disposition": Disposition.REJECTED.value,
            },
        )

    def pipeline_of(request: Request) -> SettlementPipeline:
        return request.app.state.components.pipeline

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "service": SERVICE_NAME, "ts": int(time.time() * 1000)}

    @app.post("/api/purchase")
    async def purchase(body: PurchaseRequest, request: Request) -> JSONResponse:
        outcome = await pipeline_of(request).settle_native_payment(body.txSignature or "")
        return _respond(outcome)

    @app.post("/api/purchase-token")
    async def purchase_token(body: TokenPurchaseRequest, request: Request) -> JSONResponse:
        outcome = await pipeline_of(request).settle_token_payment(
            body.txSignature or "", body.asset or ""
        )
        return _respond(outcome)

    return app


def _respond(outcome: SettlementOutcome) -> JSONResponse:
    code = status_for(outcome)
    if not outcome.ok:
        logger.info(
            "purchase_failed",
            reference=outcome.reference,
            error_code=outcome.error_code.value if outcome.error_code else None,
            status_code=code,
        )
    return JSONResponse(status_code=code, content=outcome.to_dict())
