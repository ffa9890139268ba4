from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from tripboard.conflicts import ROLE_CONFIRMED, entry_role
from tripboard.models import INVITE_ACCEPTED, ConflictAnnotation, ScheduleEntry
from tripboard.rsvp import status_label


def _description(entry: ScheduleEntry, viewer_id: str, conflicts: Iterable[ConflictAnnotation]) -> str:
    lines = []
    invite = entry.invite_for(viewer_id)
    if invite is not None:
        lines.append(f"RSVP: {status_label(invite.status)}")
    going = sorted(inv.user_id for inv in entry.invites if inv.status == INVITE_ACCEPTED)
    if going:
        lines.append("Going: " + ", ".join(going))
    for annotation in conflicts:
        lines.append(f"Conflicts with {annotation.name} ({annotation.time_label})")
    return "\n".join(lines)


def build_calendar(
    entries: Iterable[ScheduleEntry],
    viewer_id: str,
    conflicts: dict[str, list[ConflictAnnotation]] | None = None,
    *,
    default_duration_minutes: int = 60,
    calendar_name: str = "",
) -> bytes:
    """Render the viewer's confirmed schedule entries as an iCalendar document."""
    conflicts = conflicts or {}
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Tripboard//Trip Schedule//EN")
    calendar_obj.add("VERSION", "2.0")
    if calendar_name:
        calendar_obj.add("X-WR-CALNAME", calendar_name)
    for entry in entries:
        if entry.start is None or entry_role(entry, viewer_id) != ROLE_CONFIRMED:
            continue
        vevent = ICEvent()
        vevent.add("UID", f"{entry.id}@tripboard")
        vevent.add("SUMMARY", entry.title or entry.kind)
        vevent.add("DESCRIPTION", _description(entry, viewer_id, conflicts.get(entry.id, [])))
        if entry.location:
            vevent.add("LOCATION", entry.location)
        vevent.add("DTSTART", entry.start)
        if entry.end is not None and entry.end > entry.start:
            vevent.add("DTEND", entry.end)
        else:
            vevent.add("DTEND", entry.start + timedelta(minutes=default_duration_minutes))
        vevent.add("CATEGORIES", [entry.kind])
        calendar_obj.add_component(vevent)
    return calendar_obj.to_ical()
