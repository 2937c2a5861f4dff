from __future__ import annotations
from typing import Any, Dict, List, Union

from .sources import AvailabilityFetcher, Record, record_list
from .transport import Transport

AbsenceId = Union[int, str]

OUT_OF_OFFICE_PATH = "user/out-of-office"


class AvailabilityActions:
    """Out-of-office CRUD. Writes clear the availability cache."""

    def __init__(self, transport: Transport, fetcher: AvailabilityFetcher) -> None:
        self.transport = transport
        self.fetcher = fetcher

    async def list(self) -> List[Record]:
        envelope = await self.transport.get(OUT_OF_OFFICE_PATH)
        return record_list(envelope.get("data"))

    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        envelope = await self.transport.post(OUT_OF_OFFICE_PATH, data)
        self.fetcher.invalidate_all()
        return envelope.get("data") or {}

    async def update(self, absence_id: AbsenceId, data: Dict[str, Any]) -> Dict[str, Any]:
        envelope = await self.transport.put(f"{OUT_OF_OFFICE_PATH}/{absence_id}", data)
        self.fetcher.invalidate_all()
        return envelope.get("data") or {}

    async def delete(self, absence_id: AbsenceId) -> None:
        await self.transport.delete(f"{OUT_OF_OFFICE_PATH}/{absence_id}")
        self.fetcher.invalidate_all()
