"""Availability Index - merged view of external calendars and the ledger"""
import asyncio
import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse
from uuid import UUID

from domain.availability import find_conflicts, is_available
from domain.entities import utcnow
from domain.enums import DIRECT_SOURCE
from domain.value_objects import BlockedRange, StayDates
from infrastructure.calendar.feed_fetcher import FeedFetcher
from infrastructure.calendar.feed_parser import FeedParser
from infrastructure.repositories.ledger import ReservationLedger

logger = logging.getLogger(__name__)


def feed_labels(urls: Sequence[str]) -> Dict[str, str]:
    """Map each feed URL to a readable source label (its host)"""
    labels: Dict[str, str] = {}
    for index, url in enumerate(urls):
        label = urlparse(url).hostname or f"feed-{index + 1}"
        if label.startswith("www."):
            label = label[4:]
        if label in labels:
            label = f"{label}#{index + 1}"
        labels[label] = url
    return labels


class AvailabilityIndex:
    """Service answering "which nights are taken".

    Each feed keeps its last successful parse, so a feed that times out or
    answers garbage does not suddenly free up its dates.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        feed_urls: Sequence[str] = (),
        fetcher: Optional[FeedFetcher] = None,
        parser: Optional[FeedParser] = None,
        refresh_on_read: bool = True
    ):
        self.ledger = ledger
        self.feeds = feed_labels(feed_urls)
        self.fetcher = fetcher or FeedFetcher()
        self.parser = parser or FeedParser()
        self.refresh_on_read = refresh_on_read
        self._snapshots: Dict[str, List[BlockedRange]] = {}
        self._refreshed_at: Dict[str, datetime] = {}

    async def _load_feed(self, label: str, url: str, today: Optional[date]) -> Optional[List[BlockedRange]]:
        document = await self.fetcher.fetch(url)
        if document.degraded:
            return None
        return self.parser.parse(document, label, today=today)

    async def refresh_feeds(self, today: Optional[date] = None) -> Dict[str, List[BlockedRange]]:
        """Re-poll every feed concurrently and keep the successful parses"""
        if not self.feeds:
            return {}

        labels = list(self.feeds)
        results = await asyncio.gather(
            *(self._load_feed(label, self.feeds[label], today) for label in labels),
            return_exceptions=True,
        )

        for label, result in zip(labels, results):
            if isinstance(result, BaseException):
                logger.warning("Feed %s failed, keeping previous snapshot: %r", label, result)
            elif result is None:
                logger.warning("Feed %s degraded, keeping previous snapshot (%d ranges)",
                               label, len(self._snapshots.get(label, [])))
            else:
                self._snapshots[label] = result
                self._refreshed_at[label] = utcnow()

        return {label: list(ranges) for label, ranges in self._snapshots.items()}

    def feed_status(self) -> Dict[str, Optional[str]]:
        return {
            label: (self._refreshed_at[label].isoformat() if label in self._refreshed_at else None)
            for label in self.feeds
        }

    async def external_ranges(self, refresh: Optional[bool] = None, today: Optional[date] = None) -> List[BlockedRange]:
        if self.refresh_on_read if refresh is None else refresh:
            await self.refresh_feeds(today=today)
        return [b for ranges in self._snapshots.values() for b in ranges]

    async def blocked_ranges(self, refresh: Optional[bool] = None, today: Optional[date] = None) -> List[BlockedRange]:
        """External ranges plus confirmed direct reservations, in a stable order"""
        external = await self.external_ranges(refresh=refresh, today=today)
        direct = [r.to_blocked_range() for r in await self.ledger.list_confirmed()]
        return sorted(external + direct, key=lambda b: b.sort_key())

    async def active_holds(self, exclude_id: Optional[UUID] = None, now: Optional[datetime] = None) -> List[BlockedRange]:
        now = now or utcnow()
        pending = await self.ledger.list_pending()
        holds = [
            r.to_blocked_range() for r in pending
            if r.is_hold_active(now) and r.reservation_id != exclude_id
        ]
        return sorted(holds, key=lambda b: b.sort_key())

    async def is_available(
        self,
        stay: StayDates,
        include_holds: bool = True,
        refresh: Optional[bool] = None,
        now: Optional[datetime] = None
    ) -> bool:
        blocked = await self.blocked_ranges(refresh=refresh)
        if include_holds:
            blocked += await self.active_holds(now=now)
        return is_available(stay.check_in, stay.check_out, blocked)

    async def conflicts_for(self, stay: StayDates, exclude_id: Optional[UUID] = None, refresh: Optional[bool] = None) -> List[BlockedRange]:
        """Confirmed and external ranges overlapping the stay, ignoring the reservation itself"""
        own_id = str(exclude_id) if exclude_id else None
        ranges = await self.blocked_ranges(refresh=refresh)
        blocked = [
            b for b in ranges
            if not (b.source == DIRECT_SOURCE and b.external_id == own_id)
        ]
        return find_conflicts(stay.check_in, stay.check_out, blocked)
