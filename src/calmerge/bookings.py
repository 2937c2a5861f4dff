from __future__ import annotations
from typing import Any, Dict, Optional, Union
import logging

from .sources import BookingsFetcher, Record
from .transport import Transport

logger = logging.getLogger(__name__)

BookingId = Union[int, str]


class BookingActions:
    """Booking reads and status changes that keep the bookings cache honest.

    Any status change clears the whole bookings cache instead of guessing
    which cached windows contain the booking.
    """

    def __init__(self, transport: Transport, fetcher: BookingsFetcher) -> None:
        self.transport = transport
        self.fetcher = fetcher

    async def get_booking(self, booking_id: BookingId) -> Record:
        for booking in self.fetcher.cached_bookings():
            if str(booking.get("id")) == str(booking_id):
                return booking
        envelope = await self.transport.get(f"user/{self.fetcher.identity.user_id}/bookings/{booking_id}")
        return envelope.get("data") or {}

    async def change_status(
        self,
        booking_id: BookingId,
        event_id: BookingId,
        status: str,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        org = organization_id or self.fetcher.identity.organization_id
        if not org:
            raise ValueError("An organization id is required to change a booking status.")
        envelope = await self.transport.put(
            f"organizations/{org}/events/{event_id}/bookings/{booking_id}",
            {"status": status},
        )
        self.fetcher.invalidate_all()
        logger.info("Booking %s set to %s", booking_id, status)
        return envelope.get("data") or {}

    async def confirm(self, booking_id: BookingId, event_id: BookingId, organization_id: Optional[str] = None):
        return await self.change_status(booking_id, event_id, "confirmed", organization_id)

    async def cancel(self, booking_id: BookingId, event_id: BookingId, organization_id: Optional[str] = None):
        return await self.change_status(booking_id, event_id, "canceled", organization_id)

    async def remove(self, booking_id: BookingId, event_id: BookingId, organization_id: Optional[str] = None):
        return await self.change_status(booking_id, event_id, "removed", organization_id)
