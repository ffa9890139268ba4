import unittest

from tripboard.conflicts import detect_conflicts, entry_role
from tripboard.models import ActivityPayload, Invite, Proposal, RestaurantPayload, ScheduleEntry
from tripboard.timeutils import parse_instant


def _entry(entry_id, start, end=None, created_by="ana", invites=(), time_label="", status="confirmed"):
    return ScheduleEntry(
        id=entry_id,
        trip_id="t1",
        kind="activity",
        created_by=created_by,
        title=f"Item {entry_id}",
        start=parse_instant(start),
        end=parse_instant(end),
        time_label=time_label,
        status=status,
        invites=list(invites),
    )


def _others(result, item_id):
    return [annotation.other_item_id for annotation in result[item_id]]


class ConflictDetectionTests(unittest.TestCase):
    def test_overlapping_confirmed_entries_flag_each_other(self) -> None:
        entries = [
            _entry("a", "2026-06-01T14:00:00Z", "2026-06-01T15:00:00Z"),
            _entry("b", "2026-06-01T14:30:00Z", "2026-06-01T16:00:00Z"),
            _entry("c", "2026-06-01T17:00:00Z", "2026-06-01T18:00:00Z"),
        ]
        result = detect_conflicts("ana", entries)
        self.assertEqual(_others(result, "a"), ["b"])
        self.assertEqual(_others(result, "b"), ["a"])
        self.assertEqual(result["c"], [])

    def test_annotation_carries_name_and_label(self) -> None:
        entries = [
            _entry("a", "2026-06-01T14:00:00Z"),
            _entry("b", "2026-06-01T14:30:00Z"),
        ]
        annotation = detect_conflicts("ana", entries)["a"][0]
        self.assertEqual(annotation.name, "Item b")
        self.assertEqual(annotation.time_label, "2:30 PM")
        self.assertEqual(
            sorted(annotation.to_dict()),
            ["end_minute", "item_id", "name", "other_item_id", "start_minute", "time_label"],
        )
        self.assertEqual((annotation.start_minute, annotation.end_minute), (14 * 60 + 30, 15 * 60 + 30))

    def test_default_duration_is_sixty_minutes(self) -> None:
        entries = [
            _entry("a", "2026-06-01T14:00:00Z"),
            _entry("b", "2026-06-01T15:00:00Z"),
            _entry("c", "2026-06-01T14:59:00Z"),
        ]
        result = detect_conflicts("ana", entries)
        self.assertEqual(_others(result, "a"), ["c"])
        self.assertEqual(_others(result, "b"), ["c"])

    def test_custom_default_duration(self) -> None:
        entries = [_entry("a", "2026-06-01T14:00:00Z"), _entry("b", "2026-06-01T14:45:00Z")]
        result = detect_conflicts("ana", entries, default_duration_minutes=30)
        self.assertEqual(result["a"], [])

    def test_different_days_never_conflict(self) -> None:
        entries = [_entry("a", "2026-06-01T14:00:00Z"), _entry("b", "2026-06-02T14:00:00Z")]
        result = detect_conflicts("ana", entries)
        self.assertEqual(result["a"], [])
        self.assertEqual(result["b"], [])

    def test_time_label_overrides_start(self) -> None:
        entries = [
            _entry("a", "2026-06-01T00:00:00Z", time_label="7:00 PM"),
            _entry("b", "2026-06-01T19:30:00Z"),
        ]
        self.assertEqual(_others(detect_conflicts("ana", entries), "a"), ["b"])

    def test_unparseable_items_are_skipped(self) -> None:
        entries = [_entry("a", "2026-06-01T14:00:00Z"), _entry("b", None)]
        result = detect_conflicts("ana", entries)
        self.assertNotIn("b", result)
        self.assertEqual(result["a"], [])

    def test_only_viewer_items_participate(self) -> None:
        mine = _entry("a", "2026-06-01T14:00:00Z")
        declined = _entry(
            "b", "2026-06-01T14:00:00Z", created_by="ben", invites=[Invite("b", "entry", "ana", "declined")]
        )
        stranger = _entry("c", "2026-06-01T14:00:00Z", created_by="ben")
        canceled = _entry("d", "2026-06-01T14:00:00Z", status="canceled")
        result = detect_conflicts("ana", [mine, declined, stranger, canceled])
        self.assertEqual(list(result), ["a"])

    def test_pending_invites_only_checked_against_confirmed(self) -> None:
        confirmed = _entry("a", "2026-06-01T14:00:00Z")
        pending_one = _entry(
            "b", "2026-06-01T14:15:00Z", created_by="ben", invites=[Invite("b", "entry", "ana", "pending")]
        )
        pending_two = _entry(
            "c", "2026-06-01T14:20:00Z", created_by="cy", invites=[Invite("c", "entry", "ana", "pending")]
        )
        result = detect_conflicts("ana", [confirmed, pending_one, pending_two])
        self.assertEqual(_others(result, "a"), ["b", "c"])
        self.assertEqual(_others(result, "b"), ["a"])
        self.assertEqual(_others(result, "c"), ["a"])

    def test_proposal_candidates(self) -> None:
        confirmed = _entry("a", "2026-06-01T19:00:00Z")
        dinner = Proposal(
            id="p1",
            trip_id="t1",
            kind="restaurant",
            proposed_by="ben",
            payload=RestaurantPayload(
                name="Tasca", reservation_time=parse_instant("2026-06-01T00:00:00Z"), time_label="7:30 PM"
            ),
        )
        hike = Proposal(
            id="p2",
            trip_id="t1",
            kind="activity",
            proposed_by="ben",
            payload=ActivityPayload(title="Hike", start_time=parse_instant("2026-06-01T19:10:00Z")),
        )
        result = detect_conflicts("ana", [confirmed], [dinner, hike])
        self.assertEqual(_others(result, "p1"), ["a"])
        self.assertEqual(_others(result, "p2"), ["a"])
        self.assertEqual(_others(result, "a"), ["p2", "p1"])

    def test_entry_role(self) -> None:
        entry = _entry("a", "2026-06-01T14:00:00Z", created_by="ben", invites=[Invite("a", "entry", "ana", "waitlisted")])
        self.assertIsNone(entry_role(entry, "ana"))
        self.assertEqual(entry_role(entry, "ben"), "confirmed")


if __name__ == "__main__":
    unittest.main()
