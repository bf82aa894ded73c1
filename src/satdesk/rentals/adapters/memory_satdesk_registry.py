"""In-memory adapter for SatDesk accounts."""

from copy import deepcopy
from typing import Iterable, Optional

from ...core.exceptions import IntegrityError
from ..domain.entities import DeviceStatus, SatDesk
from ..domain.ports import IDeviceRegistry, ISatDeskRegistry


class InMemorySatDeskRegistry(ISatDeskRegistry):
    """SatDesk registry whose device counts are derived from a device registry."""

    def __init__(
        self,
        device_registry: IDeviceRegistry,
        sat_desks: Optional[Iterable[SatDesk]] = None,
    ):
        self.device_registry = device_registry
        self._sat_desks: dict[str, SatDesk] = {}
        for sat_desk in sat_desks or []:
            self._sat_desks[sat_desk.id] = deepcopy(sat_desk)

    async def list(self) -> list[SatDesk]:
        return [deepcopy(s) for s in sorted(self._sat_desks.values(), key=lambda s: s.number)]

    async def get(self, sat_desk_id: str) -> Optional[SatDesk]:
        sat_desk = self._sat_desks.get(sat_desk_id)
        return deepcopy(sat_desk) if sat_desk else None

    async def add(self, sat_desk: SatDesk) -> SatDesk:
        if sat_desk.id in self._sat_desks:
            raise IntegrityError(f"SatDesk {sat_desk.id} already exists", constraint="id")
        self._sat_desks[sat_desk.id] = deepcopy(sat_desk)
        return deepcopy(sat_desk)

    async def device_count(self, sat_desk_id: str) -> int:
        devices = await self.device_registry.list_all()
        return sum(
            1
            for d in devices
            if d.sat_desk_id == sat_desk_id and d.status != DeviceStatus.ARCHIVED
        )
