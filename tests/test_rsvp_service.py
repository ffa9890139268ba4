import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from tripboard.errors import (
    ItemNoLongerOpenError,
    ItemNotFoundError,
    NotInvitedError,
    PermissionDeniedError,
)
from tripboard.models import AppConfig, NotificationConfig
from tripboard.notifier import WebhookNotifier
from tripboard.proposals import ProposalController
from tripboard.rsvp import RsvpService, accepted_count
from tripboard.state_store import StateStore


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


START = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class RsvpServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.clock = FakeClock(START)
        self.controller = ProposalController(self.store, AppConfig(), clock=self.clock)
        self.rsvp = RsvpService(self.store, clock=self.clock)
        self.entry = self.controller.schedule(
            "t1",
            {
                "kind": "activity",
                "title": "Boat tour",
                "start_time": "2026-06-05T10:00:00Z",
                "max_capacity": 2,
                "attendee_ids": ["ben", "cy", "dee"],
            },
            "ana",
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _statuses(self) -> dict[str, str]:
        return {invite.user_id: invite.status for invite in self.store.list_invites(self.entry.id)}

    def test_waitlist_and_promotion(self) -> None:
        self.assertEqual(self.rsvp.respond(self.entry.id, "ben", "ACCEPT").invite.status, "accepted")
        self.clock.now += timedelta(minutes=1)
        result = self.rsvp.respond(self.entry.id, "cy", "ACCEPT")
        self.assertTrue(result.waitlisted)
        self.assertEqual(result.invite.status, "waitlisted")

        self.clock.now += timedelta(minutes=1)
        result = self.rsvp.respond(self.entry.id, "ben", "DECLINE")
        self.assertEqual(result.promoted_user_ids, ["cy"])
        self.assertEqual(self._statuses(), {"ana": "accepted", "ben": "declined", "cy": "accepted", "dee": "pending"})
        self.assertEqual(accepted_count(self.store.list_invites(self.entry.id)), 2)

    def test_repeated_response_is_idempotent(self) -> None:
        self.rsvp.respond(self.entry.id, "ben", "DECLINE")
        before = len(self.store.recent_audit_events(entity_id=self.entry.id, action="rsvp"))
        result = self.rsvp.respond(self.entry.id, "ben", "DECLINE")
        self.assertFalse(result.changed)
        after = len(self.store.recent_audit_events(entity_id=self.entry.id, action="rsvp"))
        self.assertEqual(before, after)

    def test_errors(self) -> None:
        with self.assertRaises(ItemNotFoundError):
            self.rsvp.respond("missing", "ben", "ACCEPT")
        with self.assertRaises(NotInvitedError):
            self.rsvp.respond(self.entry.id, "zed", "ACCEPT")
        with self.assertRaises(PermissionDeniedError):
            self.rsvp.respond(self.entry.id, "ana", "DECLINE")

    def test_started_item_is_closed(self) -> None:
        self.clock.now = datetime(2026, 6, 5, 10, 30, tzinfo=timezone.utc)
        with self.assertRaises(ItemNoLongerOpenError):
            self.rsvp.respond(self.entry.id, "ben", "ACCEPT")

    def test_canceled_item_is_closed(self) -> None:
        self.controller.cancel_entry(self.entry.id, "ana")
        with self.assertRaises(ItemNoLongerOpenError):
            self.rsvp.respond(self.entry.id, "ben", "ACCEPT")

    def test_proposal_invites_close_at_deadline(self) -> None:
        proposal = self.controller.propose(
            "t1",
            {"kind": "activity", "title": "Wine tasting", "attendee_ids": ["ben"]},
            "ana",
            START + timedelta(hours=1),
        )
        self.assertEqual(self.rsvp.respond(proposal.id, "ben", "MAYBE").changed, False)
        self.clock.now = START + timedelta(hours=2)
        with self.assertRaises(ItemNoLongerOpenError):
            self.rsvp.respond(proposal.id, "ben", "ACCEPT")

    def test_set_attendees(self) -> None:
        self.rsvp.respond(self.entry.id, "ben", "ACCEPT")
        self.rsvp.respond(self.entry.id, "cy", "ACCEPT")
        with self.assertRaises(PermissionDeniedError):
            self.rsvp.set_attendees(self.entry.id, "ben", ["ben"])

        invites = self.rsvp.set_attendees(self.entry.id, "ana", ["cy", "eve"])

        statuses = {invite.user_id: invite.status for invite in invites}
        self.assertEqual(statuses, {"ana": "accepted", "cy": "accepted", "eve": "pending"})
        self.assertEqual(self._statuses(), statuses)

    def test_promotion_notifies_promoted_member(self) -> None:
        notifier = WebhookNotifier(NotificationConfig(webhook_url="https://hooks.example.com/trip"))
        rsvp = RsvpService(self.store, notifier=notifier, clock=self.clock)
        rsvp.respond(self.entry.id, "ben", "ACCEPT")
        rsvp.respond(self.entry.id, "cy", "ACCEPT")
        with mock.patch("tripboard.notifier.requests.post") as post:
            rsvp.respond(self.entry.id, "ben", "DECLINE")
        post.assert_called_once()
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["event"], "waitlist_promoted")
        self.assertEqual(body["recipients"], ["cy"])


if __name__ == "__main__":
    unittest.main()
