"""
Calendar sync tests: feed fetching, parsing, publishing and the merged availability index
"""
import httpx
import pytest
from datetime import date, datetime, timedelta, timezone

from application.availability import AvailabilityIndex, feed_labels
from domain.enums import DIRECT_SOURCE, HOLD_SOURCE
from domain.value_objects import BlockedRange, StayDates
from infrastructure.calendar.feed_fetcher import CalendarDocument, looks_like_calendar
from infrastructure.calendar.feed_parser import FeedParser
from infrastructure.calendar.feed_publisher import PRODID, FeedPublisher
from conftest import FeedServer, make_ics, make_reservation

AIRBNB = "https://www.airbnb.com/calendar/ical/1234.ics?s=abc"
BOOKING = "https://admin.booking.com/hotel/hoteladmin/ical.html?t=xyz"
EARLY = date(2020, 1, 1)


# ============================================================================
# FEED FETCHER
# ============================================================================

class TestFeedFetcher:

    @pytest.mark.infrastructure
    async def test_fetch_calendar(self):
        body = make_ics([("a1", date(2025, 7, 5), date(2025, 7, 10), "Reserved")])
        server = FeedServer({AIRBNB: body})

        document = await server.fetcher().fetch(AIRBNB)

        assert not document.degraded
        assert document.body == body
        assert server.calls == [AIRBNB]

    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    @pytest.mark.parametrize("response", [
        500,
        404,
        "<html><body>Please log in</body></html>",
        httpx.ConnectTimeout("timed out"),
        httpx.ConnectError("connection refused"),
        RuntimeError("boom"),
    ])
    async def test_failures_yield_empty_degraded_document(self, response):
        server = FeedServer({AIRBNB: response})

        document = await server.fetcher().fetch(AIRBNB)

        assert document.degraded
        assert looks_like_calendar(document.body)
        assert FeedParser().parse(document, "airbnb.com") == []

    @pytest.mark.unit
    def test_sniff(self):
        assert looks_like_calendar("\r\n  BEGIN:VCALENDAR\r\nEND:VCALENDAR")
        assert looks_like_calendar("begin:vcalendar")
        assert not looks_like_calendar("<!DOCTYPE html>")
        assert not CalendarDocument(body="BEGIN:VCALENDAR").degraded


# ============================================================================
# FEED PARSER
# ============================================================================

class TestFeedParser:

    @pytest.fixture
    def parser(self):
        return FeedParser()

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_exclusive_end_becomes_last_night(self, parser):
        body = make_ics([("a1", date(2025, 7, 5), date(2025, 7, 10), "Reserved")])

        ranges = parser.parse(body, "airbnb.com", today=EARLY)

        assert ranges == [BlockedRange(
            start=date(2025, 7, 5), end=date(2025, 7, 9),
            source="airbnb.com", external_id="a1", label="Reserved",
        )]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    def test_missing_dtend_blocks_one_night(self, parser):
        body = make_ics([("a2", date(2025, 8, 1), None, "Not available")])

        ranges = parser.parse(body, "vrbo.com", today=EARLY)

        assert [(b.start, b.end) for b in ranges] == [(date(2025, 8, 1), date(2025, 8, 1))]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    def test_same_day_end_blocks_start_night(self, parser):
        body = make_ics([("a3", date(2025, 8, 1), date(2025, 8, 1), "Blocked")])
        ranges = parser.parse(body, "vrbo.com", today=EARLY)
        assert [(b.start, b.end) for b in ranges] == [(date(2025, 8, 1), date(2025, 8, 1))]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_datetime_values_use_their_date(self, parser):
        body = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:dt1\r\nDTSTART:20250710T150000Z\r\nDTEND:20250715T100000Z\r\n"
            "SUMMARY:Guest\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        ranges = parser.parse(body, "booking.com", today=EARLY)
        assert [(b.start, b.end) for b in ranges] == [(date(2025, 7, 10), date(2025, 7, 14))]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_past_events_are_dropped(self, parser):
        body = make_ics([
            ("old", date(2025, 6, 1), date(2025, 6, 5), "Reserved"),
            ("ending", date(2025, 6, 28), date(2025, 7, 2), "Reserved"),
            ("new", date(2025, 7, 5), date(2025, 7, 10), "Reserved"),
        ])

        ranges = parser.parse(body, "airbnb.com", today=date(2025, 7, 1))

        assert [b.external_id for b in ranges] == ["ending", "new"]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    def test_event_without_start_is_skipped(self, parser):
        body = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:nostart\r\nSUMMARY:Broken\r\nEND:VEVENT\r\n"
            "BEGIN:VEVENT\r\nUID:ok\r\nDTSTART;VALUE=DATE:20250705\r\nDTEND;VALUE=DATE:20250707\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        ranges = parser.parse(body, "airbnb.com", today=EARLY)
        assert [b.external_id for b in ranges] == ["ok"]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    def test_unparseable_date_is_skipped(self, parser):
        body = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Test//EN\r\n"
            "BEGIN:VEVENT\r\nUID:bad\r\nDTSTART;VALUE=DATE:notadate\r\nEND:VEVENT\r\n"
            "BEGIN:VEVENT\r\nUID:ok\r\nDTSTART;VALUE=DATE:20250705\r\nDTEND;VALUE=DATE:20250707\r\n"
            "END:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        ranges = parser.parse(body, "airbnb.com", today=EARLY)
        assert [b.external_id for b in ranges] == ["ok"]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    @pytest.mark.edge_case
    def test_garbage_document(self, parser):
        assert parser.parse("this is not a calendar", "airbnb.com") == []

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_empty_calendar(self, parser):
        assert parser.parse(CalendarDocument.empty(), "airbnb.com") == []


# ============================================================================
# FEED PUBLISHER
# ============================================================================

class TestFeedPublisher:

    @pytest.fixture
    def publisher(self):
        return FeedPublisher("kefalonia-bnb.test", "Kefalonia Vintage Home")

    @pytest.fixture
    def ranges(self):
        return [
            BlockedRange(start=date(2025, 7, 12), end=date(2025, 7, 19), source=DIRECT_SOURCE, external_id="r2", label="Booked"),
            BlockedRange(start=date(2025, 7, 5), end=date(2025, 7, 9), source=DIRECT_SOURCE, external_id="r1", label="Booked"),
            BlockedRange(start=date(2025, 8, 1), end=date(2025, 8, 4), source="airbnb.com", external_id="ab1"),
            BlockedRange(start=date(2025, 9, 1), end=date(2025, 9, 2), source=HOLD_SOURCE, external_id="r3"),
        ]

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_export_direct_only_by_default(self, publisher, ranges):
        body = publisher.export(ranges).decode("utf-8")

        assert f"PRODID:{PRODID}" in body
        assert "METHOD:PUBLISH" in body
        assert body.count("BEGIN:VEVENT") == 2
        assert "DTSTART;VALUE=DATE:20250705" in body
        assert "DTEND;VALUE=DATE:20250710" in body
        assert "DTEND;VALUE=DATE:20250720" in body
        assert body.index("20250705") < body.index("20250712")

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_export_with_external_ranges(self, publisher, ranges):
        body = publisher.export(ranges, include_external=True).decode("utf-8")
        assert body.count("BEGIN:VEVENT") == 3
        assert "DTSTART;VALUE=DATE:20250901" not in body

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_uids_stable_across_exports(self, publisher, ranges):
        first = publisher.export(ranges, generated_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        second = publisher.export(list(reversed(ranges)), generated_at=datetime(2025, 2, 1, tzinfo=timezone.utc))

        def uids(body: bytes):
            return [line for line in body.decode("utf-8").splitlines() if line.startswith("UID:")]

        assert uids(first) == uids(second)
        assert all(uid.endswith("@kefalonia-bnb.test") for uid in uids(first))
        assert publisher.event_uid(ranges[0]) != publisher.event_uid(ranges[1])

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_export_then_parse_gives_same_ranges(self, publisher, ranges):
        direct = [b for b in ranges if b.source == DIRECT_SOURCE]

        parsed = FeedParser().parse(publisher.export(direct), "kefalonia-bnb.test", today=EARLY)

        assert sorted((b.start, b.end) for b in parsed) == sorted((b.start, b.end) for b in direct)

    @pytest.mark.unit
    @pytest.mark.infrastructure
    def test_empty_export_is_valid_calendar(self, publisher):
        body = publisher.export([])
        assert looks_like_calendar(body.decode("utf-8"))
        assert FeedParser().parse(body, "self", today=EARLY) == []


# ============================================================================
# AVAILABILITY INDEX
# ============================================================================

class TestFeedLabels:

    @pytest.mark.unit
    def test_labels_from_hosts(self):
        labels = feed_labels([AIRBNB, BOOKING, "https://www.airbnb.com/calendar/ical/999.ics"])
        assert list(labels) == ["airbnb.com", "admin.booking.com", "airbnb.com#3"]
        assert labels["airbnb.com"] == AIRBNB


class TestAvailabilityIndex:

    @pytest.fixture
    def stay_dates(self):
        check_in = date.today() + timedelta(days=40)
        return check_in, check_in + timedelta(days=5)

    @pytest.mark.application
    async def test_merges_feeds_and_confirmed_reservations(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({
            AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")]),
            BOOKING: make_ics([("bk1", check_in + timedelta(days=20), check_in + timedelta(days=22), "CLOSED")]),
        })
        direct = make_reservation(check_in + timedelta(days=10), check_in + timedelta(days=13))
        direct.confirm()
        await ledger.save(direct)
        await ledger.save(make_reservation(check_in + timedelta(days=30), check_in + timedelta(days=33)))
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB, BOOKING], fetcher=server.fetcher())

        blocked = await index.blocked_ranges()

        assert [b.source for b in blocked] == ["airbnb.com", DIRECT_SOURCE, "admin.booking.com"]
        assert blocked[0].end == check_out - timedelta(days=1)
        assert all(index.feed_status().values())

    @pytest.mark.application
    async def test_checkout_day_is_bookable(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")])})
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB], fetcher=server.fetcher())

        assert not await index.is_available(StayDates(check_in=check_in + timedelta(days=2), check_out=check_out + timedelta(days=2)))
        assert await index.is_available(StayDates(check_in=check_out, check_out=check_out + timedelta(days=3)))
        assert await index.is_available(StayDates(check_in=check_in - timedelta(days=3), check_out=check_in))

    @pytest.mark.application
    @pytest.mark.edge_case
    async def test_failing_feed_keeps_previous_snapshot(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")])})
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB], fetcher=server.fetcher())
        await index.refresh_feeds()

        server.responses[AIRBNB] = httpx.ReadTimeout("slow")
        assert len(await index.external_ranges()) == 1

        server.responses[AIRBNB] = 503
        assert len(await index.external_ranges()) == 1
        assert len(server.calls) == 3

    @pytest.mark.application
    @pytest.mark.edge_case
    async def test_one_bad_feed_does_not_hide_others(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({
            AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")]),
            BOOKING: "<html>maintenance</html>",
        })
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB, BOOKING], fetcher=server.fetcher())

        blocked = await index.external_ranges()

        assert [b.external_id for b in blocked] == ["ab1"]
        assert index.feed_status()["admin.booking.com"] is None

    @pytest.mark.application
    async def test_successful_refresh_replaces_snapshot(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")])})
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB], fetcher=server.fetcher())
        assert len(await index.external_ranges()) == 1

        # the external booking was cancelled upstream
        server.responses[AIRBNB] = make_ics([])
        assert await index.external_ranges() == []

    @pytest.mark.application
    async def test_reads_without_refresh_use_snapshot(self, ledger, stay_dates):
        check_in, check_out = stay_dates
        server = FeedServer({AIRBNB: make_ics([("ab1", check_in, check_out, "Reserved")])})
        index = AvailabilityIndex(ledger, feed_urls=[AIRBNB], fetcher=server.fetcher(), refresh_on_read=False)

        assert await index.external_ranges() == []
        await index.refresh_feeds()
        assert len(await index.external_ranges()) == 1
        assert len(server.calls) == 1

    @pytest.mark.application
    async def test_holds_count_only_while_active(self, ledger):
        now = datetime.now(timezone.utc)
        held = make_reservation(date(2030, 7, 5), date(2030, 7, 10), hold_for=timedelta(minutes=30), now=now)
        await ledger.save(held)
        index = AvailabilityIndex(ledger)
        stay = StayDates(check_in=date(2030, 7, 8), check_out=date(2030, 7, 12))

        assert not await index.is_available(stay)
        assert await index.is_available(stay, include_holds=False)
        assert await index.active_holds(exclude_id=held.reservation_id) == []
        assert await index.active_holds(now=now + timedelta(minutes=31)) == []

    @pytest.mark.application
    async def test_conflicts_ignore_own_reservation(self, ledger):
        own = make_reservation(date(2030, 7, 5), date(2030, 7, 10))
        own.confirm()
        await ledger.save(own)
        index = AvailabilityIndex(ledger)

        assert await index.conflicts_for(own.stay, exclude_id=own.reservation_id) == []
        assert len(await index.conflicts_for(own.stay)) == 1
