"""Fetch remote iCalendar feeds without ever failing the caller."""
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0

EMPTY_CALENDAR = (
    "BEGIN:VCALENDAR\r\n"
    "VERSION:2.0\r\n"
    "PRODID:-//Villa Booking Engine//Empty Feed//EN\r\n"
    "END:VCALENDAR\r\n"
)


class CalendarDocument(BaseModel):
    """Raw calendar text plus where it came from.

    `degraded` is set when the body is the empty substitute for a failed fetch.
    """
    body: str
    url: str = ""
    degraded: bool = False

    @classmethod
    def empty(cls, url: str = "", degraded: bool = True) -> "CalendarDocument":
        return cls(body=EMPTY_CALENDAR, url=url, degraded=degraded)


def looks_like_calendar(body: str) -> bool:
    return body.lstrip("﻿ \t\r\n").upper().startswith("BEGIN:VCALENDAR")


class FeedFetcher:
    """HTTP client for external calendars (Booking.com, Airbnb, Vrbo ...)"""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    async def fetch(self, url: str) -> CalendarDocument:
        try:
            if self._client is not None:
                resp = await self._client.get(url, timeout=self.timeout, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    resp = await client.get(url)
        except httpx.TimeoutException:
            logger.warning("Calendar feed timed out after %ss: %s", self.timeout, url)
            return CalendarDocument.empty(url)
        except httpx.HTTPError as e:
            logger.warning("Calendar feed request failed for %s: %s", url, e)
            return CalendarDocument.empty(url)
        except Exception:
            logger.exception("Unexpected error fetching calendar feed %s", url)
            return CalendarDocument.empty(url)

        if not resp.is_success:
            logger.warning("Calendar feed %s answered %s", url, resp.status_code)
            return CalendarDocument.empty(url)

        body = resp.text or ""
        if not looks_like_calendar(body):
            logger.warning("Calendar feed %s did not return a calendar document (%d bytes)", url, len(body))
            return CalendarDocument.empty(url)

        return CalendarDocument(body=body, url=url)
