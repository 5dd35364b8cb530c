"""
Tests for GET /api/analytics.

Tests cover:
- Empty database returns zeros
- Totals by direction, contacts count, per-channel counts
- Per-day counts limited to the last 7 days
- Average response time between an inbound message and the first reply
"""

from datetime import timedelta

import pytest

from conftest import create_contact, post_inbound
from inbox.models import Contact, Message, Thread
from inbox.storage import SessionLocal
from inbox.utils import utcnow


@pytest.fixture
def seeded_client(client):
    """
    Seed one contact with two threads and timed messages:

    sms:      inbound t0, outbound t0+2min, inbound t0+10min, outbound t0+16min
    whatsapp: inbound t0+1min (never answered)
    plus one sms inbound 10 days ago, outside the daily window
    """
    t0 = utcnow() - timedelta(hours=1)
    db = SessionLocal()
    try:
        contact = Contact(name="Ada", phone="+14155550123", channel="sms")
        db.add(contact)
        db.flush()
        sms = Thread(contact_id=contact.id, channel="sms")
        wa = Thread(contact_id=contact.id, channel="whatsapp")
        db.add_all([sms, wa])
        db.flush()

        def msg(thread, direction, created_at):
            return Message(
                thread_id=thread.id,
                body=f"{direction} {created_at.isoformat()}",
                direction=direction,
                channel=thread.channel,
                status="sent",
                created_at=created_at,
            )

        db.add_all([
            msg(sms, "INBOUND", t0 - timedelta(days=10)),
            msg(sms, "INBOUND", t0),
            msg(sms, "OUTBOUND", t0 + timedelta(minutes=2)),
            msg(wa, "INBOUND", t0 + timedelta(minutes=1)),
            msg(sms, "INBOUND", t0 + timedelta(minutes=10)),
            msg(sms, "OUTBOUND", t0 + timedelta(minutes=16)),
        ])
        db.commit()
    finally:
        db.close()

    return client


class TestAnalyticsEmpty:
    """Test analytics with empty database."""

    def test_empty_database(self, client):
        """Test zeros and empty breakdowns when there is no data."""
        response = client.get("/api/analytics")

        assert response.status_code == 200
        data = response.json()
        assert data["totalMessages"] == 0
        assert data["inboundCount"] == 0
        assert data["outboundCount"] == 0
        assert data["contactsCount"] == 0
        assert data["avgResponseTime"] == 0
        assert data["avgResponseTimeMinutes"] == 0
        assert data["messagesByChannel"] == []
        assert data["messagesByDay"] == []


class TestAnalyticsTotals:
    """Test totals and breakdowns."""

    def test_totals(self, seeded_client):
        data = seeded_client.get("/api/analytics").json()

        assert data["totalMessages"] == 6
        assert data["inboundCount"] == 4
        assert data["outboundCount"] == 2
        assert data["contactsCount"] == 1

    def test_messages_by_channel(self, seeded_client):
        data = seeded_client.get("/api/analytics").json()

        assert data["messagesByChannel"] == [
            {"channel": "sms", "count": 5},
            {"channel": "whatsapp", "count": 1},
        ]

    def test_messages_by_day_excludes_old_messages(self, seeded_client):
        """Test only the last 7 days are broken down per day and channel."""
        data = seeded_client.get("/api/analytics").json()

        by_day = data["messagesByDay"]
        assert sum(row["count"] for row in by_day) == 5
        assert {row["channel"] for row in by_day} == {"sms", "whatsapp"}
        for row in by_day:
            assert len(row["date"]) == 10

    def test_contacts_count_from_webhook(self, client):
        """Test contacts created by inbound messages are counted."""
        post_inbound(client, "+14155550123", "a", "SM1")
        post_inbound(client, "+14155550124", "b", "SM2")
        create_contact(client, phone="+14155550125")

        data = client.get("/api/analytics").json()

        assert data["contactsCount"] == 3
        assert data["inboundCount"] == 2


class TestAverageResponseTime:
    """Test avgResponseTime (seconds) and avgResponseTimeMinutes."""

    def test_average_over_answered_inbound_messages(self, seeded_client):
        """
        Each inbound is paired with the first later outbound in its thread:
        2min and 6min for the recent sms messages, 10 days + 2min for the old
        one. The unanswered whatsapp inbound is skipped.
        """
        data = seeded_client.get("/api/analytics").json()

        old_gap = timedelta(days=10, minutes=2).total_seconds()
        expected = (old_gap + 120 + 360) / 3
        assert data["avgResponseTime"] == pytest.approx(expected)
        assert data["avgResponseTimeMinutes"] == round(expected / 60)


class TestProfileResponseTime:
    """Test per-contact avgResponseTimeMinutes in the profile."""

    def test_profile_average_uses_adjacent_pairs(self, seeded_client):
        """
        Newest first across all threads:
        out+16, in+10, out+2, in(wa)+1, in+0, in-10d.
        Adjacent OUTBOUND-after-INBOUND pairs: 16-10 and 2-1, so 3.5 -> 4 minutes.
        """
        contact = seeded_client.get("/api/contacts").json()[0]

        data = seeded_client.get(f"/api/contacts/{contact['id']}/profile").json()

        assert data["stats"]["avgResponseTimeMinutes"] == 4
        assert data["stats"]["totalMessages"] == 6
