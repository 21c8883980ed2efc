"""Rail selection policy."""

import asyncio
import logging
from typing import Iterable, Optional

from dogenode.errors import NoRailAvailable
from dogenode.ledger.models import RailName
from dogenode.rails.base import SettlementRail, is_native_address, is_token_address

logger = logging.getLogger(__name__)

# Preference order per destination format
NATIVE_PREFERENCE = (RailName.NODE, RailName.EXPLORER)
TOKEN_PREFERENCE = (RailName.TOKEN,)


class RailSelector:
    """Holds the configured rails and picks one per send attempt.

    Availability is evaluated on every call so a rail that goes away between
    attempts is never reused from a stale choice.
    """

    def __init__(self, rails: Iterable[SettlementRail]):
        self._rails: dict[RailName, SettlementRail] = {}
        for rail in rails:
            self._rails[rail.name] = rail

    @property
    def rails(self) -> list[SettlementRail]:
        return list(self._rails.values())

    def get(self, name: RailName) -> Optional[SettlementRail]:
        return self._rails.get(RailName(name))

    def candidates(self, to_address: str) -> tuple[RailName, ...]:
        if is_native_address(to_address):
            return NATIVE_PREFERENCE
        if is_token_address(to_address):
            return TOKEN_PREFERENCE
        return ()

    def select(self, to_address: str) -> SettlementRail:
        """Pick the first available rail for the destination format.

        Raises:
            NoRailAvailable
        """
        for name in self.candidates(to_address):
            rail = self._rails.get(name)
            if rail is not None and rail.is_available():
                return rail

        raise NoRailAvailable(f"No available rail can pay {to_address}")

    async def validate_destination(self, to_address: str) -> dict[str, bool]:
        """Per-rail validity of an address."""
        results = {}
        for rail in self._rails.values():
            results[rail.name.value] = await rail.validate_address(to_address)
        return results

    async def is_valid_destination(self, to_address: str) -> bool:
        """True if any configured rail accepts the address."""
        return any((await self.validate_destination(to_address)).values())

    async def connect_all(self) -> dict[str, bool]:
        names = list(self._rails)
        results = await asyncio.gather(*(self._rails[n].connect() for n in names))
        return {name.value: ok for name, ok in zip(names, results)}

    async def close_all(self) -> None:
        for rail in self._rails.values():
            await rail.close()

    def status(self) -> dict[str, dict]:
        return {rail.name.value: rail.status() for rail in self._rails.values()}

    def any_available(self) -> bool:
        return any(rail.is_available() for rail in self._rails.values())
