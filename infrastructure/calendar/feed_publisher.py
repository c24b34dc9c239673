"""Publish occupancy as an iCalendar feed for the channel managers to import."""
import hashlib
from datetime import datetime, timezone
from typing import Iterable, Optional

from icalendar import Calendar, Event

from domain.enums import DIRECT_SOURCE, HOLD_SOURCE
from domain.value_objects import BlockedRange

PRODID = "-//KefaloniaBnb//Direct Booking Calendar//EN"


class FeedPublisher:

    def __init__(self, calendar_domain: str, property_name: str = ""):
        self.calendar_domain = calendar_domain
        self.property_name = property_name

    def event_uid(self, blocked: BlockedRange) -> str:
        """Same range in, same UID out, across exports"""
        key = "|".join([
            blocked.source,
            blocked.external_id or "",
            blocked.start.isoformat(),
            blocked.end.isoformat(),
        ])
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return f"{digest}@{self.calendar_domain}"

    def should_publish(self, blocked: BlockedRange, include_external: bool) -> bool:
        if blocked.source == HOLD_SOURCE:
            return False
        if blocked.source == DIRECT_SOURCE:
            return True
        return include_external

    def export(
        self,
        ranges: Iterable[BlockedRange],
        include_external: bool = False,
        generated_at: Optional[datetime] = None
    ) -> bytes:
        stamp = generated_at or datetime.now(timezone.utc)

        cal = Calendar()
        cal.add("prodid", PRODID)
        cal.add("version", "2.0")
        cal.add("calscale", "GREGORIAN")
        cal.add("method", "PUBLISH")
        if self.property_name:
            cal.add("x-wr-calname", self.property_name)

        selected = [b for b in ranges if self.should_publish(b, include_external)]
        for blocked in sorted(selected, key=lambda b: b.sort_key()):
            event = Event()
            event.add("uid", self.event_uid(blocked))
            event.add("dtstamp", stamp)
            event.add("dtstart", blocked.start)
            event.add("dtend", blocked.exclusive_end)
            event.add("summary", blocked.label or "Booked")
            event.add("transp", "OPAQUE")
            cal.add_component(event)

        return cal.to_ical()
