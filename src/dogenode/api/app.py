"""FastAPI application factory."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from dogenode import __version__
from dogenode.api.schemas import error_payload
from dogenode.config import Settings, get_settings
from dogenode.errors import ErrorKind, SettlementError, ValidationError
from dogenode.ledger.database import close_db, init_db, make_session_factory
from dogenode.rails.base import SettlementRail
from dogenode.rails.factory import build_rails
from dogenode.rails.selector import RailSelector
from dogenode.settlement.engine import SettlementEngine, SleepFunc
from dogenode.settlement.monitor import ConfirmationMonitor
from dogenode.settlement.scheduler import LimitResetScheduler

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.ACCOUNT_NOT_FOUND: 404,
    ErrorKind.ACCOUNT_INACTIVE: 403,
    ErrorKind.INSUFFICIENT_FUNDS: 400,
    ErrorKind.DAILY_LIMIT_EXCEEDED: 429,
    ErrorKind.RAIL_UNAVAILABLE: 503,
    ErrorKind.INSUFFICIENT_RAIL_LIQUIDITY: 503,
    ErrorKind.DROPPED_BY_NETWORK: 502,
    ErrorKind.NO_RAIL_AVAILABLE: 503,
    ErrorKind.RECORD_NOT_FOUND: 404,
    ErrorKind.ILLEGAL_TRANSITION: 409,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.SETTLEMENT_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    state = app.state

    # Startup
    await init_db(state.db_engine)
    rails = await state.selector.connect_all()
    logger.info(f"Rails connected: {rails}")

    resume_task = asyncio.create_task(state.engine.resume_interrupted())
    state.monitor.start()
    state.scheduler.start()

    yield

    # Shutdown
    await state.scheduler.stop()
    await state.monitor.stop()
    if not resume_task.done():
        resume_task.cancel()
    await asyncio.gather(resume_task, return_exceptions=True)
    await state.selector.close_all()
    if state.db_engine is None:
        await close_db()


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 500),
        content=error_payload(exc),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content=error_payload(SettlementError.wrap(exc)))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    error = ValidationError("; ".join(messages) or "Invalid request")
    return JSONResponse(status_code=400, content=error_payload(error))


def create_app(
    settings: Optional[Settings] = None,
    rails: Optional[list[SettlementRail]] = None,
    db_engine: Optional[AsyncEngine] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        rails: Rails to use instead of building them from settings
        db_engine: Database engine to use instead of the global one
        sleep: Backoff sleep used by the settlement engine
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="DogeNode API",
        description="Withdrawal settlement service for DOGE payouts",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    session_factory = make_session_factory(db_engine) if db_engine is not None else None
    selector = RailSelector(rails if rails is not None else build_rails(settings))

    app.state.settings = settings
    app.state.db_engine = db_engine
    app.state.session_factory = session_factory
    app.state.selector = selector
    app.state.engine = SettlementEngine(selector, session_factory, settings, sleep=sleep)
    app.state.monitor = ConfirmationMonitor(selector, session_factory, settings)
    app.state.scheduler = LimitResetScheduler(session_factory, settings)

    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # Register routes
    from dogenode.api.routers import transactions, wallet, withdraw
    from dogenode.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(withdraw.router)
    app.include_router(wallet.router)
    app.include_router(transactions.router)

    return app
