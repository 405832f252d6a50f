"""Tests for mass messages and invitations.

Covers:
- Audience resolution by RSVP response and waitlist
- SMS length and email subject validation
- Quota reservation before sending, refunds for failed deliveries
- Invitations skip contacts that were already invited
- A delivery channel that raises or under-reports never costs quota
- Weekly mass-send throttle and its API view
"""
from datetime import timedelta

import pytest

from eventplanner.config import settings
from eventplanner.errors import InvalidTransition, NotOrganizer, QuotaExceeded, ValidationFailed
from eventplanner.models.communication import DeliveryStatus, Invitation, TargetAudience
from eventplanner.models.quota import Channel
from eventplanner.models.rsvp import RsvpResponse
from eventplanner.services import messaging_service, quota_service, rsvp_service, waitlist_service
from eventplanner.services.delivery import DeliveryChannel, DeliveryResult
from eventplanner.services.quota_service import QuotaScope
from eventplanner.timeutils import utc_now
from tests.conftest import (
    NOW,
    RecordingDelivery,
    create_test_event,
    create_test_user,
    make_event,
    make_user,
)


@pytest.fixture
def crowd(db):
    """A full one-seat event with a YES, MAYBE, NO and waitlisted guest."""
    organizer = make_user(db, "Organizer", email="org@example.com", phone="+15550000")
    yes = make_user(db, "Yes", email="yes@example.com", phone="+15550001")
    maybe = make_user(db, "Maybe", email="maybe@example.com", phone="+15550002")
    no = make_user(db, "No", email="no@example.com")
    queued = make_user(db, "Queued", email="queued@example.com", phone="+15550004")
    event = make_event(db, organizer, capacity=1, waitlist_enabled=True)
    rsvp_service.set_rsvp(db, event.event_id, yes.user_id, RsvpResponse.yes, now=NOW)
    rsvp_service.set_rsvp(db, event.event_id, maybe.user_id, RsvpResponse.maybe, now=NOW)
    rsvp_service.set_rsvp(db, event.event_id, no.user_id, RsvpResponse.no, now=NOW)
    waitlist_service.join(db, event.event_id, queued.user_id, now=NOW)
    return event, organizer


class BrokenDelivery(DeliveryChannel):
    def send(self, recipients, channel, content):
        raise ConnectionError("provider unreachable")


class ForgetfulDelivery(DeliveryChannel):
    """Reports on the first contact only."""

    def send(self, recipients, channel, content):
        return [DeliveryResult(contact=recipients[0], ok=True)]


def _event_quota(db, event, channel):
    return quota_service.quota_snapshot(db, QuotaScope.for_event(event.event_id), channel, now=NOW)


def _contacts(db, event, audience, channel):
    return {r.contact for r in messaging_service.resolve_audience(db, event.event_id, audience, channel)}


class TestAudience:
    def test_by_response(self, db, crowd):
        event, _ = crowd
        assert _contacts(db, event, TargetAudience.yes_only, Channel.email) == {"yes@example.com"}
        assert _contacts(db, event, TargetAudience.maybe_only, Channel.email) == {"maybe@example.com"}
        assert _contacts(db, event, TargetAudience.no_only, Channel.email) == {"no@example.com"}

    def test_all_means_every_rsvp(self, db, crowd):
        event, _ = crowd
        assert _contacts(db, event, TargetAudience.all, Channel.email) == {
            "yes@example.com", "maybe@example.com", "no@example.com",
        }

    def test_waitlist_only(self, db, crowd):
        event, _ = crowd
        assert _contacts(db, event, TargetAudience.waitlist_only, Channel.sms) == {"+15550004"}

    def test_users_without_contact_are_skipped(self, db, crowd):
        event, _ = crowd
        assert _contacts(db, event, TargetAudience.no_only, Channel.sms) == set()

    def test_duplicate_phone_numbers_are_sent_once(self, db):
        organizer = make_user(db, "Organizer")
        a = make_user(db, "A", phone="+15551111")
        b = make_user(db, "B", phone="+15551111")
        event = make_event(db, organizer)
        rsvp_service.set_rsvp(db, event.event_id, a.user_id, RsvpResponse.yes, now=NOW)
        rsvp_service.set_rsvp(db, event.event_id, b.user_id, RsvpResponse.yes, now=NOW)
        recipients = messaging_service.resolve_audience(db, event.event_id, TargetAudience.all, Channel.sms)
        assert len(recipients) == 1


class TestSendMassMessage:
    def test_sends_and_reserves_both_scopes(self, db, crowd):
        event, organizer = crowd
        delivery = RecordingDelivery()
        communication = messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
            body="Rain plan: we move to the pavilion.", delivery=delivery, now=NOW,
        )
        assert communication.recipient_count == 2
        assert communication.sent_count == 2
        assert {contact for contact, _, _ in delivery.sent} == {"+15550001", "+15550002"}

        event_quota = quota_service.quota_snapshot(db, QuotaScope.for_event(event.event_id), Channel.sms, now=NOW)
        organizer_quota = quota_service.quota_snapshot(
            db, QuotaScope.for_organizer(organizer.user_id), Channel.sms, now=NOW
        )
        assert event_quota.daily_count == 2
        assert organizer_quota.daily_count == 2

    def test_failed_deliveries_are_refunded(self, db, crowd):
        event, organizer = crowd
        delivery = RecordingDelivery(failing={"maybe@example.com"})
        communication = messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.email, TargetAudience.all,
            subject="Update", body="See you soon", delivery=delivery, now=NOW,
        )
        assert communication.sent_count == 2
        assert communication.failed_count == 1
        failed = [r for r in communication.recipients if r.status == DeliveryStatus.failed]
        assert [r.contact for r in failed] == ["maybe@example.com"]
        assert failed[0].failure_reason == "provider rejected"

        snapshot = quota_service.quota_snapshot(db, QuotaScope.for_event(event.event_id), Channel.email, now=NOW)
        assert snapshot.daily_count == 2

    def test_quota_breach_sends_nothing(self, db, crowd):
        event, organizer = crowd
        quota_service.check_and_reserve(db, QuotaScope.for_event(event.event_id), Channel.sms, 99, now=NOW)
        delivery = RecordingDelivery()
        with pytest.raises(QuotaExceeded):
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
                body="Hello", delivery=delivery, now=NOW,
            )
        assert delivery.sent == []
        assert messaging_service.list_mass_messages(db, event.event_id, organizer.user_id) == []
        assert quota_service.throttle_snapshot(db, event.event_id, Channel.sms, now=NOW).used == 0

    def test_sms_too_long(self, db, crowd):
        event, organizer = crowd
        with pytest.raises(ValidationFailed) as exc:
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
                body="x" * 161, now=NOW,
            )
        assert exc.value.details["length"] == 161

    def test_email_needs_subject(self, db, crowd):
        event, organizer = crowd
        with pytest.raises(ValidationFailed):
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.email, TargetAudience.all,
                body="Hello", now=NOW,
            )

    def test_empty_audience(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        with pytest.raises(ValidationFailed):
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.yes_only,
                body="Hello", now=NOW,
            )

    def test_only_organizers_send(self, db, crowd):
        event, _ = crowd
        stranger = make_user(db, "Stranger")
        with pytest.raises(NotOrganizer):
            messaging_service.send_mass_message(
                db, event.event_id, stranger.user_id, Channel.sms, TargetAudience.all,
                body="Hello", now=NOW,
            )

    def test_draft_event_refuses(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer, publish=False)
        with pytest.raises(InvalidTransition):
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
                body="Hello", now=NOW,
            )


class TestInvitations:
    def test_partial_failure_then_retry(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        delivery = RecordingDelivery(failing={"b@example.com"})
        batch = messaging_service.send_invitations(
            db, event.event_id, organizer.user_id, Channel.email,
            ["a@example.com", "b@example.com", "a@example.com"], delivery=delivery, now=NOW,
        )
        assert (batch.sent, batch.failed, batch.skipped) == (1, 1, [])

        delivery.failing.clear()
        batch = messaging_service.send_invitations(
            db, event.event_id, organizer.user_id, Channel.email,
            ["a@example.com", "b@example.com"], delivery=delivery, now=NOW,
        )
        assert batch.skipped == ["a@example.com"]
        assert batch.sent == 1
        assert [i.status for i in batch.invitations] == [DeliveryStatus.sent]

        snapshot = quota_service.quota_snapshot(db, QuotaScope.for_event(event.event_id), Channel.email, now=NOW)
        assert snapshot.daily_count == 2

    def test_sms_invitation_fits_sms_limit(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer, title="A very long gathering name " * 10)
        message = messaging_service.compose_invitation(event, Channel.sms)
        assert len(message.body) <= 160
        assert message.body.startswith("Event: A very long")
        assert f"/events/{event.event_id}" in message.body

    def test_email_invitation_uses_event_timezone(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer, timezone="America/New_York")
        message = messaging_service.compose_invitation(event, Channel.email)
        assert message.subject == "You're invited: Picnic"
        # 12:00 UTC in June is 8:00 AM in New York.
        assert "8:00 AM (America/New_York)" in message.body


class TestSmsInvitationLength:
    def test_link_too_long_for_sms_is_refused(self, db, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://" + "h" * 142)
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        with pytest.raises(ValidationFailed) as exc:
            messaging_service.compose_invitation(event, Channel.sms)
        assert exc.value.details["length"] > 160

    @pytest.mark.parametrize("base_length", [83, 84, 85, 86])
    def test_title_shrinks_to_fit_a_long_link(self, db, monkeypatch, base_length):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://" + "h" * (base_length - 8))
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer, title="Summer picnic by the river")
        message = messaging_service.compose_invitation(event, Channel.sms)
        assert len(message.body) <= 160
        assert message.body.endswith(f"/events/{event.event_id}")

    def test_invitations_with_unsendable_text_cost_nothing(self, db, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://" + "h" * 142)
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        delivery = RecordingDelivery()
        with pytest.raises(ValidationFailed):
            messaging_service.send_invitations(
                db, event.event_id, organizer.user_id, Channel.sms, ["+15551234"], delivery=delivery, now=NOW,
            )
        assert delivery.sent == []
        assert _event_quota(db, event, Channel.sms).daily_count == 0


class TestDeliveryFailures:
    def test_raising_channel_refunds_quota_and_weekly_slot(self, db, crowd):
        event, organizer = crowd
        with pytest.raises(ConnectionError):
            messaging_service.send_mass_message(
                db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
                body="Rain plan", delivery=BrokenDelivery(), now=NOW,
            )
        organizer_quota = quota_service.quota_snapshot(
            db, QuotaScope.for_organizer(organizer.user_id), Channel.sms, now=NOW
        )
        throttle = quota_service.throttle_snapshot(db, event.event_id, Channel.sms, now=NOW)
        assert _event_quota(db, event, Channel.sms).daily_count == 0
        assert organizer_quota.daily_count == 0
        assert (throttle.used, throttle.last_sent_at) == (0, None)
        assert messaging_service.list_mass_messages(db, event.event_id, organizer.user_id) == []

        # The refunded slot can be used right away.
        communication = messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
            body="Rain plan", delivery=RecordingDelivery(), now=NOW,
        )
        assert communication.sent_count == 2

    def test_unreported_contacts_count_as_failed(self, db, crowd):
        event, organizer = crowd
        communication = messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.all,
            body="Rain plan", delivery=ForgetfulDelivery(), now=NOW,
        )
        assert communication.recipient_count == 2
        assert (communication.sent_count, communication.failed_count) == (1, 1)
        statuses = {r.contact: (r.status, r.failure_reason) for r in communication.recipients}
        assert statuses == {
            "+15550001": (DeliveryStatus.sent, None),
            "+15550002": (DeliveryStatus.failed, "No delivery result"),
        }
        assert _event_quota(db, event, Channel.sms).daily_count == 1

    def test_raising_channel_during_invitations(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        with pytest.raises(ConnectionError):
            messaging_service.send_invitations(
                db, event.event_id, organizer.user_id, Channel.email,
                ["a@example.com", "b@example.com"], delivery=BrokenDelivery(), now=NOW,
            )
        assert _event_quota(db, event, Channel.email).daily_count == 0
        assert db.query(Invitation).count() == 0

    def test_unreported_invitations_count_as_failed(self, db):
        organizer = make_user(db, "Organizer")
        event = make_event(db, organizer)
        batch = messaging_service.send_invitations(
            db, event.event_id, organizer.user_id, Channel.email,
            ["a@example.com", "b@example.com"], delivery=ForgetfulDelivery(), now=NOW,
        )
        assert (batch.sent, batch.failed) == (1, 1)
        assert _event_quota(db, event, Channel.email).daily_count == 1


class TestMassSendThrottle:
    def _send(self, db, event, organizer, when):
        return messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.sms, TargetAudience.yes_only,
            body="Reminder", delivery=RecordingDelivery(), now=when,
        )

    def test_second_send_within_a_day_is_refused(self, db, crowd):
        event, organizer = crowd
        self._send(db, event, organizer, NOW)
        with pytest.raises(QuotaExceeded) as exc:
            self._send(db, event, organizer, NOW + timedelta(hours=1))
        assert exc.value.window == "spacing"
        assert exc.value.details["next_send_allowed"] == (NOW + timedelta(hours=24)).isoformat()
        assert _event_quota(db, event, Channel.sms).daily_count == 1

    def test_weekly_budget_per_channel(self, db, crowd):
        event, organizer = crowd
        sunday = NOW + timedelta(days=1)
        for day in range(3):
            self._send(db, event, organizer, sunday + timedelta(days=day))
        with pytest.raises(QuotaExceeded) as exc:
            self._send(db, event, organizer, sunday + timedelta(days=3))
        assert exc.value.window == "weekly"

        # Email keeps its own budget.
        communication = messaging_service.send_mass_message(
            db, event.event_id, organizer.user_id, Channel.email, TargetAudience.yes_only,
            subject="Reminder", body="See you Saturday", delivery=RecordingDelivery(),
            now=sunday + timedelta(days=3),
        )
        assert communication.sent_count == 1


class TestMessagingApi:
    def test_send_and_list(self, client, delivery):
        organizer = create_test_user(client, name="Organizer")
        guest = create_test_user(client, name="Guest", phone="+15559999")
        event = create_test_event(client, organizer["user_id"])
        client.post(f"/api/events/{event['event_id']}/rsvp", json={"user_id": guest["user_id"], "response": "YES"})

        resp = client.post(f"/api/events/{event['event_id']}/messages", json={
            "organizer_id": organizer["user_id"],
            "channel": "SMS",
            "target_audience": "YES_ONLY",
            "body": "Doors open at 7",
        })
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["sent_count"] == 1
        assert data["recipients"][0]["contact"] == "+15559999"
        assert [contact for contact, _, _ in delivery.sent] == ["+15559999"]

        resp = client.get(f"/api/events/{event['event_id']}/messages?organizer_id={organizer['user_id']}")
        assert len(resp.json()) == 1

    def test_sms_too_long_is_422(self, client):
        organizer = create_test_user(client, name="Organizer")
        event = create_test_event(client, organizer["user_id"])
        resp = client.post(f"/api/events/{event['event_id']}/messages", json={
            "organizer_id": organizer["user_id"],
            "channel": "SMS",
            "target_audience": "ALL",
            "body": "x" * 200,
        })
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "VALIDATION_FAILED"

    def test_over_quota_is_429(self, client, db):
        organizer = create_test_user(client, name="Organizer")
        guest = create_test_user(client, name="Guest", phone="+15559999")
        event = create_test_event(client, organizer["user_id"])
        client.post(f"/api/events/{event['event_id']}/rsvp", json={"user_id": guest["user_id"], "response": "YES"})
        quota_service.check_and_reserve(db, QuotaScope.for_event(event["event_id"]), Channel.sms, 100, now=utc_now())

        resp = client.post(f"/api/events/{event['event_id']}/messages", json={
            "organizer_id": organizer["user_id"],
            "channel": "SMS",
            "target_audience": "ALL",
            "body": "Hello",
        })
        assert resp.status_code == 429
        assert resp.json()["detail"]["details"]["window"] == "daily"

    def test_quota_endpoint(self, client):
        organizer = create_test_user(client, name="Organizer")
        event = create_test_event(client, organizer["user_id"])
        resp = client.post(f"/api/events/{event['event_id']}/invitations", json={
            "organizer_id": organizer["user_id"],
            "channel": "EMAIL",
            "contacts": ["friend@example.com"],
        })
        assert resp.status_code == 200
        assert resp.json()["sent"] == 1

        resp = client.get(f"/api/events/{event['event_id']}/quota?organizer_id={organizer['user_id']}")
        quotas = {q["channel"]: q for q in resp.json()}
        assert quotas["EMAIL"]["daily_count"] == 1
        assert quotas["EMAIL"]["daily_limit"] == 500
        assert quotas["SMS"]["daily_remaining"] == 100

    def test_mass_send_budget_endpoint(self, client, delivery):
        organizer = create_test_user(client, name="Organizer")
        guest = create_test_user(client, name="Guest", email="guest@example.com")
        event = create_test_event(client, organizer["user_id"])
        client.post(f"/api/events/{event['event_id']}/rsvp", json={"user_id": guest["user_id"], "response": "YES"})
        resp = client.post(f"/api/events/{event['event_id']}/messages", json={
            "organizer_id": organizer["user_id"],
            "channel": "EMAIL",
            "target_audience": "ALL",
            "subject": "Parking",
            "body": "Use the north lot",
        })
        assert resp.status_code == 201, resp.text

        resp = client.get(f"/api/events/{event['event_id']}/quota/mass-sends?organizer_id={organizer['user_id']}")
        assert resp.status_code == 200
        budgets = {b["channel"]: b for b in resp.json()}
        assert budgets["EMAIL"]["used"] == 1
        assert budgets["EMAIL"]["remaining"] == 4
        assert budgets["EMAIL"]["can_send_now"] is False
        assert budgets["EMAIL"]["next_send_allowed"] is not None
        assert budgets["SMS"] == {
            "channel": "SMS", "used": 0, "limit": 3, "remaining": 3,
            "last_sent_at": None, "next_send_allowed": None,
            "approaching_limit": False, "at_limit": False, "can_send_now": True,
        }

    def test_second_mass_send_same_day_is_429(self, client, delivery):
        organizer = create_test_user(client, name="Organizer")
        guest = create_test_user(client, name="Guest", phone="+15559999")
        event = create_test_event(client, organizer["user_id"])
        client.post(f"/api/events/{event['event_id']}/rsvp", json={"user_id": guest["user_id"], "response": "YES"})
        payload = {
            "organizer_id": organizer["user_id"],
            "channel": "SMS",
            "target_audience": "ALL",
            "body": "Hello",
        }
        assert client.post(f"/api/events/{event['event_id']}/messages", json=payload).status_code == 201
        resp = client.post(f"/api/events/{event['event_id']}/messages", json=payload)
        assert resp.status_code == 429
        assert resp.json()["detail"]["details"]["window"] == "spacing"
