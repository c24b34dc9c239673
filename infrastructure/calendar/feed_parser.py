"""Turn iCalendar documents into blocked ranges.

Calendar events use an exclusive end date (DTEND is the checkout day); the
ranges produced here store the last occupied night instead.
"""
import logging
from datetime import date, timedelta
from typing import List, Optional, Union

from icalendar import Calendar

from domain.value_objects import BlockedRange, as_date
from infrastructure.calendar.feed_fetcher import CalendarDocument

logger = logging.getLogger(__name__)

ONE_NIGHT = timedelta(days=1)


class FeedParser:
    """Parse VEVENTs of an external calendar. Never raises on bad input."""

    def parse(
        self,
        document: Union[CalendarDocument, str, bytes],
        source_label: str,
        today: Optional[date] = None
    ) -> List[BlockedRange]:
        body = document.body if isinstance(document, CalendarDocument) else document
        today = today or date.today()

        try:
            calendar = Calendar.from_ical(body)
        except (ValueError, IndexError, KeyError) as e:
            logger.warning("Discarding malformed calendar from %s: %s", source_label, e)
            return []

        ranges: List[BlockedRange] = []
        for event in calendar.walk("VEVENT"):
            try:
                blocked = self._event_to_range(event, source_label)
            except (ValueError, TypeError) as e:
                logger.warning("Skipping malformed event from %s (UID=%s): %s", source_label, event.get("UID"), e)
                continue

            if blocked.end < today:
                continue
            ranges.append(blocked)

        return ranges

    def _event_to_range(self, event, source_label: str) -> BlockedRange:
        start = self._date_value(event, "DTSTART")
        if start is None:
            raise ValueError("event has no DTSTART")

        exclusive_end = self._date_value(event, "DTEND")
        if exclusive_end is None:
            # A missing DTEND blocks the start night only
            exclusive_end = start + ONE_NIGHT

        uid = event.get("UID")
        summary = event.get("SUMMARY")
        return BlockedRange.from_exclusive_end(
            start,
            exclusive_end,
            source=source_label,
            external_id=str(uid) if uid else None,
            label=str(summary) if summary else None,
        )

    @staticmethod
    def _date_value(event, name: str) -> Optional[date]:
        prop = event.get(name)
        if prop is None:
            return None
        value = getattr(prop, "dt", None)
        if value is None:
            raise ValueError(f"{name} is not a date: {prop!r}")
        return as_date(value)
