# src/stakeledger/api/app.py
from __future__ import annotations

import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stakeledger.api.errors import ApiError, api_error_from_staking
from stakeledger.api.routes import router
from stakeledger.api.structured_logging import RequestLogMiddleware
from stakeledger.ledger.errors import StakingError
from stakeledger.runtime.ledger_boot import LedgerService
from stakeledger.runtime.ledger_boot import build_ledger_service as _build_ledger_service


def build_service() -> LedgerService:
    """Build the LedgerService for API runtime.

    This wrapper exists so tests can monkeypatch `stakeledger.api.app.build_service`
    without reaching into runtime modules.
    """
    return _build_ledger_service()


def create_app(*, boot_service: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_service:
      - True (default): load config and attach app.state.service
      - False: no service; tests attach their own
    """
    mode = (os.environ.get("STAKELEDGER_MODE") or "dev").strip().lower()

    if mode == "prod":
        app = FastAPI(title="Staking Ledger API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="Staking Ledger API")

    app.state.service = build_service() if boot_service else None

    @app.exception_handler(ApiError)
    async def _api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_json())

    @app.exception_handler(StakingError)
    async def _staking_error_handler(_request: Request, exc: StakingError) -> JSONResponse:
        err = api_error_from_staking(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_json())

    app.add_middleware(RequestLogMiddleware)
    app.include_router(router)
    return app
