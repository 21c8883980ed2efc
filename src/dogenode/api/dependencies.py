"""FastAPI dependencies resolving the services built by create_app."""

from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dogenode.config import Settings
from dogenode.rails.selector import RailSelector
from dogenode.settlement.engine import SettlementEngine
from dogenode.settlement.monitor import ConfirmationMonitor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> Optional[async_sessionmaker[AsyncSession]]:
    return request.app.state.session_factory


def get_selector(request: Request) -> RailSelector:
    return request.app.state.selector


def get_engine(request: Request) -> SettlementEngine:
    return request.app.state.engine


def get_monitor(request: Request) -> ConfirmationMonitor:
    return request.app.state.monitor
