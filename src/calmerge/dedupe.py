from __future__ import annotations
from datetime import timedelta
from typing import List, Sequence, Set
import logging

from .models import Event
from .normalize import LOCATION_DISPLAY_NAMES, normalize_text

logger = logging.getLogger(__name__)

DEFAULT_TIME_TOLERANCE = timedelta(seconds=60)


# Type labels such as "Google Meet" name a product, not a meeting.
_GENERIC_VENUES = {normalize_text(label) for label in LOCATION_DISPLAY_NAMES.values()}


def _venues(e: Event) -> Set[str]:
    venues = set()
    location = normalize_text(e.location)
    if location and any(part.strip() not in _GENERIC_VENUES for part in location.split(",")):
        venues.add(location)
    url = normalize_text(e.conference_url)
    if url:
        venues.add(url)
    return venues


class DuplicateDetector:
    """Spots external calendar mirrors of internal bookings.

    There is no shared identifier between a booking and its synced copy, so
    this is a heuristic: close start times plus a matching title or venue.
    It can miss renamed mirrors and can merge two genuinely separate
    meetings that share a title and start time.
    """

    def __init__(
        self,
        time_tolerance: timedelta = DEFAULT_TIME_TOLERANCE,
        match_locations: bool = True,
    ) -> None:
        self.time_tolerance = time_tolerance
        self.match_locations = match_locations

    def is_duplicate(self, internal: Event, external: Event) -> bool:
        if abs(internal.start_utc - external.start_utc) > self.time_tolerance:
            return False
        title = normalize_text(internal.title)
        if title and title == normalize_text(external.title):
            return True
        if self.match_locations:
            return bool(_venues(internal) & _venues(external))
        return False

    def filter_duplicates(
        self, internal_events: Sequence[Event], external_events: Sequence[Event]
    ) -> List[Event]:
        """Return the external events that do not mirror any internal booking."""
        kept: List[Event] = []
        for external in external_events:
            match = next((b for b in internal_events if self.is_duplicate(b, external)), None)
            if match is not None:
                logger.debug("Dropping external %s (%r); mirrors booking %s", external.id, external.title, match.id)
                continue
            kept.append(external)
        return kept
