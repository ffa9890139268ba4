"""Per-viewer schedule conflict detection.

Confirmed items (the viewer created them or accepted the invite) are
checked against each other. Candidate items (pending invites and active
proposals) are only checked against the confirmed set, so candidates warn
but never block one another. Conflicts are computed at read time and are
never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from itertools import combinations
from typing import Iterable

from tripboard.models import (
    ENTRY_CONFIRMED,
    INVITE_ACCEPTED,
    INVITE_PENDING,
    ConflictAnnotation,
    Proposal,
    ScheduleEntry,
)
from tripboard.timeutils import format_clock_time, intervals_overlap, parse_instant, resolve_window


DEFAULT_DURATION_MINUTES = 60

ROLE_CONFIRMED = "confirmed"
ROLE_PENDING_RSVP = "pending-rsvp"
ROLE_PROPOSAL = "proposal"


@dataclass
class TimelineItem:
    item_id: str
    name: str
    role: str
    day: date
    start_minute: int
    end_minute: int
    time_label: str

    @property
    def confirmed(self) -> bool:
        return self.role == ROLE_CONFIRMED

    def overlaps(self, other: "TimelineItem") -> bool:
        return self.day == other.day and intervals_overlap(
            self.start_minute, self.end_minute, other.start_minute, other.end_minute
        )

    def annotation_for(self, owner_id: str) -> ConflictAnnotation:
        return ConflictAnnotation(
            item_id=owner_id,
            other_item_id=self.item_id,
            name=self.name,
            time_label=self.time_label,
            start_minute=self.start_minute,
            end_minute=self.end_minute,
        )


def entry_role(entry: ScheduleEntry, viewer_id: str) -> str | None:
    if entry.status != ENTRY_CONFIRMED:
        return None
    if entry.created_by == viewer_id:
        return ROLE_CONFIRMED
    invite = entry.invite_for(viewer_id)
    if invite is None:
        return None
    if invite.status == INVITE_ACCEPTED:
        return ROLE_CONFIRMED
    if invite.status == INVITE_PENDING:
        return ROLE_PENDING_RSVP
    return None


def _label(start: datetime | None, time_label: str, tz: tzinfo) -> str:
    if time_label:
        return time_label
    if start is None:
        return "TBD"
    return format_clock_time(start.astimezone(tz))


def _timeline_item(
    item_id: str,
    name: str,
    role: str,
    start: object,
    end: object,
    time_label: str,
    default_minutes: int,
    tz: tzinfo,
) -> TimelineItem | None:
    try:
        window = resolve_window(start, end, time_label, default_minutes=default_minutes, tz=tz)
        start_dt = parse_instant(start)
    except (TypeError, ValueError):
        return None
    if window is None:
        return None
    day, start_minute, end_minute = window
    return TimelineItem(
        item_id=item_id,
        name=name,
        role=role,
        day=day,
        start_minute=start_minute,
        end_minute=end_minute,
        time_label=_label(start_dt, time_label, tz),
    )


def build_timeline(
    viewer_id: str,
    items: Iterable[ScheduleEntry],
    candidates: Iterable[ScheduleEntry | Proposal] = (),
    *,
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
    tz: tzinfo = timezone.utc,
) -> list[TimelineItem]:
    timeline: list[TimelineItem] = []
    seen: set[str] = set()
    for entry in list(items) + [c for c in candidates if isinstance(c, ScheduleEntry)]:
        if entry.id in seen:
            continue
        role = entry_role(entry, viewer_id)
        if role is None:
            continue
        item = _timeline_item(
            entry.id, entry.title, role, entry.start, entry.end, entry.time_label, default_duration_minutes, tz
        )
        if item is not None:
            seen.add(entry.id)
            timeline.append(item)
    for proposal in candidates:
        if not isinstance(proposal, Proposal) or not proposal.is_active or proposal.id in seen:
            continue
        start, end, time_label = proposal.payload.schedule_window()
        item = _timeline_item(
            proposal.id, proposal.display_name, ROLE_PROPOSAL, start, end, time_label, default_duration_minutes, tz
        )
        if item is not None:
            seen.add(proposal.id)
            timeline.append(item)
    return timeline


def detect_conflicts(
    viewer_id: str,
    items: Iterable[ScheduleEntry],
    candidates: Iterable[ScheduleEntry | Proposal] = (),
    *,
    default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
    tz: tzinfo = timezone.utc,
) -> dict[str, list[ConflictAnnotation]]:
    """Map each participating item id to the items it overlaps for ``viewer_id``.

    Items without a resolvable start, or with unparseable times, are left
    out of the result entirely. This function does not raise on bad data.
    """
    timeline = build_timeline(
        viewer_id,
        items,
        candidates,
        default_duration_minutes=default_duration_minutes,
        tz=tz,
    )
    result: dict[str, list[ConflictAnnotation]] = {item.item_id: [] for item in timeline}
    confirmed = [item for item in timeline if item.confirmed]
    pending = [item for item in timeline if not item.confirmed]

    for first, second in combinations(confirmed, 2):
        if first.overlaps(second):
            result[first.item_id].append(second.annotation_for(first.item_id))
            result[second.item_id].append(first.annotation_for(second.item_id))

    for candidate in pending:
        for anchor in confirmed:
            if candidate.overlaps(anchor):
                result[candidate.item_id].append(anchor.annotation_for(candidate.item_id))
                result[anchor.item_id].append(candidate.annotation_for(anchor.item_id))

    for annotations in result.values():
        annotations.sort(key=lambda a: (a.start_minute, a.other_item_id))
    return result
