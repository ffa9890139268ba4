from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from tripboard.errors import (
    InvalidTransitionError,
    ItemNoLongerOpenError,
    ItemNotFoundError,
    NotInvitedError,
    PermissionDeniedError,
    ValidationError,
)
from tripboard.models import (
    ENTRY_CONFIRMED,
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_PENDING,
    INVITE_WAITLISTED,
    ITEM_KIND_ENTRY,
    ITEM_KIND_PROPOSAL,
    Invite,
    InviteUpdateResult,
)
from tripboard.notifier import EVENT_WAITLIST_PROMOTED, WebhookNotifier, dispatch_notification
from tripboard.state_store import StateStore
from tripboard.timeutils import utc_now


logger = logging.getLogger(__name__)


ACTION_TO_STATUS = {
    "ACCEPT": INVITE_ACCEPTED,
    "DECLINE": INVITE_DECLINED,
    "WAITLIST": INVITE_WAITLISTED,
    "MAYBE": INVITE_PENDING,
}

# Targets reachable by the attendee's own response. Only promotion moves an
# invite from waitlisted to accepted.
ALLOWED_RESPONSES: dict[str, set[str]] = {
    INVITE_PENDING: {INVITE_ACCEPTED, INVITE_DECLINED, INVITE_WAITLISTED},
    INVITE_ACCEPTED: {INVITE_DECLINED},
    INVITE_DECLINED: {INVITE_ACCEPTED, INVITE_PENDING},
    INVITE_WAITLISTED: {INVITE_DECLINED},
}

STATUS_LABELS = {
    INVITE_ACCEPTED: "Going",
    INVITE_PENDING: "No response yet",
    INVITE_DECLINED: "Not going",
    INVITE_WAITLISTED: "Waitlisted",
}


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, "No response yet")


def normalize_action(action: str) -> str:
    normalized = str(action or "").strip().upper()
    if normalized not in ACTION_TO_STATUS:
        raise ValidationError(f"unknown RSVP action: {action!r}", fields=["action"])
    return normalized


def accepted_count(invites: Iterable[Invite]) -> int:
    return sum(1 for invite in invites if invite.status == INVITE_ACCEPTED)


def _waitlist_order(invite: Invite) -> tuple[datetime, str]:
    return invite.waitlisted_at or invite.created_at, invite.user_id


def seed_invites(
    item_id: str,
    item_kind: str,
    creator_id: str,
    attendee_ids: Iterable[str],
    now: datetime | None = None,
) -> list[Invite]:
    now = now or utc_now()
    invites = [
        Invite(
            item_id=item_id,
            item_kind=item_kind,
            user_id=creator_id,
            status=INVITE_ACCEPTED,
            responded_at=now,
            created_at=now,
        )
    ]
    for attendee_id in attendee_ids:
        if attendee_id == creator_id or any(inv.user_id == attendee_id for inv in invites):
            continue
        invites.append(Invite(item_id=item_id, item_kind=item_kind, user_id=attendee_id, created_at=now))
    return invites


def promote_waitlisted(
    invites: list[Invite],
    capacity: int | None,
    now: datetime | None = None,
) -> tuple[list[Invite], list[str]]:
    """Fill freed slots from the waitlist, longest-waiting first."""
    if capacity is None:
        return invites, []
    now = now or utc_now()
    free_slots = capacity - accepted_count(invites)
    if free_slots <= 0:
        return invites, []
    waiting = sorted((inv for inv in invites if inv.status == INVITE_WAITLISTED), key=_waitlist_order)
    promoted_ids = [invite.user_id for invite in waiting[:free_slots]]
    if not promoted_ids:
        return invites, []
    updated = [
        invite.with_updates(status=INVITE_ACCEPTED, responded_at=now, waitlisted_at=None)
        if invite.user_id in promoted_ids
        else invite
        for invite in invites
    ]
    return updated, promoted_ids


def transition_invite(
    *,
    invites: list[Invite],
    user_id: str,
    action: str,
    capacity: int | None,
    creator_id: str,
    now: datetime | None = None,
) -> tuple[list[Invite], InviteUpdateResult]:
    """Apply one attendee response to the invite list of an item."""
    now = now or utc_now()
    normalized_action = normalize_action(action)
    current = next((invite for invite in invites if invite.user_id == user_id), None)
    if current is None:
        raise NotInvitedError(f"user {user_id} is not invited")
    if user_id == creator_id:
        raise PermissionDeniedError("the organizer's attendance cannot be changed by RSVP")

    target = ACTION_TO_STATUS[normalized_action]
    previous = current.status

    if target == previous:
        return invites, InviteUpdateResult(
            invite=current,
            previous_status=previous,
            changed=False,
            waitlisted=previous == INVITE_WAITLISTED,
        )
    if previous == INVITE_WAITLISTED and target == INVITE_ACCEPTED:
        # Already queued for a seat; asking again keeps the place in line.
        return invites, InviteUpdateResult(invite=current, previous_status=previous, changed=False, waitlisted=True)
    if target not in ALLOWED_RESPONSES.get(previous, set()):
        raise InvalidTransitionError(f"cannot move an invite from {previous} to {target}")

    waitlisted = False
    if target == INVITE_ACCEPTED and capacity is not None and accepted_count(invites) >= capacity:
        target = INVITE_WAITLISTED
        waitlisted = True
    if target == previous:
        return invites, InviteUpdateResult(invite=current, previous_status=previous, changed=False, waitlisted=waitlisted)

    updated_invite = current.with_updates(
        status=target,
        responded_at=now,
        waitlisted_at=now if target == INVITE_WAITLISTED else None,
    )
    updated = [updated_invite if invite.user_id == user_id else invite for invite in invites]

    promoted: list[str] = []
    if previous == INVITE_ACCEPTED and target != INVITE_ACCEPTED:
        updated, promoted = promote_waitlisted(updated, capacity, now)

    return updated, InviteUpdateResult(
        invite=updated_invite,
        previous_status=previous,
        changed=True,
        waitlisted=target == INVITE_WAITLISTED,
        promoted_user_ids=promoted,
    )


def remove_attendees(
    invites: list[Invite],
    user_ids: Iterable[str],
    capacity: int | None,
    creator_id: str,
    now: datetime | None = None,
) -> tuple[list[Invite], list[Invite], list[str]]:
    """Drop invites for ``user_ids``; returns ``(remaining, removed, promoted_ids)``."""
    doomed = {uid for uid in user_ids if uid != creator_id}
    remaining = [invite for invite in invites if invite.user_id not in doomed]
    removed = [invite for invite in invites if invite.user_id in doomed]
    promoted: list[str] = []
    if any(invite.status == INVITE_ACCEPTED for invite in removed):
        remaining, promoted = promote_waitlisted(remaining, capacity, now)
    return remaining, removed, promoted


def carry_over_invites(
    invites: Iterable[Invite],
    *,
    item_id: str,
    item_kind: str,
    creator_id: str,
    capacity: int | None,
    now: datetime | None = None,
) -> list[Invite]:
    """Re-key invites onto a new item, re-applying capacity in response order."""
    now = now or utc_now()
    ordered = sorted(
        invites,
        key=lambda inv: (inv.user_id != creator_id, inv.responded_at or inv.created_at, inv.user_id),
    )
    carried: list[Invite] = []
    seats = 0
    for invite in ordered:
        status = invite.status
        waitlisted_at = invite.waitlisted_at
        if invite.user_id == creator_id:
            status = INVITE_ACCEPTED
        if status == INVITE_ACCEPTED:
            if capacity is not None and seats >= capacity and invite.user_id != creator_id:
                status = INVITE_WAITLISTED
                waitlisted_at = invite.responded_at or now
            else:
                seats += 1
        carried.append(
            invite.with_updates(
                item_id=item_id,
                item_kind=item_kind,
                status=status,
                waitlisted_at=waitlisted_at if status == INVITE_WAITLISTED else None,
            )
        )
    return carried


@dataclass
class RsvpTarget:
    item_id: str
    item_kind: str
    trip_id: str
    title: str
    creator_id: str
    capacity: int | None
    is_open: bool


class RsvpService:
    def __init__(
        self,
        store: StateStore,
        notifier: WebhookNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    def _load_target(self, conn: Any, item_id: str) -> RsvpTarget:
        now = self.clock()
        entry = self.store.get_entry(item_id, conn=conn)
        if entry is not None:
            started = entry.start is not None and entry.start <= now
            return RsvpTarget(
                item_id=entry.id,
                item_kind=ITEM_KIND_ENTRY,
                trip_id=entry.trip_id,
                title=entry.title,
                creator_id=entry.created_by,
                capacity=entry.capacity,
                is_open=entry.status == ENTRY_CONFIRMED and not started,
            )
        proposal = self.store.get_proposal(item_id, conn=conn)
        if proposal is not None:
            closed_by_deadline = proposal.voting_deadline is not None and proposal.voting_deadline <= now
            return RsvpTarget(
                item_id=proposal.id,
                item_kind=ITEM_KIND_PROPOSAL,
                trip_id=proposal.trip_id,
                title=proposal.display_name,
                creator_id=proposal.proposed_by,
                capacity=getattr(proposal.payload, "max_capacity", None),
                is_open=proposal.is_active and not closed_by_deadline,
            )
        raise ItemNotFoundError(f"item {item_id} not found")

    def _notify_promoted(self, target: RsvpTarget, actor_id: str, promoted: list[str]) -> None:
        for user_id in promoted:
            dispatch_notification(
                self.notifier,
                self.store,
                event=EVENT_WAITLIST_PROMOTED,
                entity_id=target.item_id,
                actor_id=actor_id,
                recipients=[user_id],
                payload={"item_id": target.item_id, "trip_id": target.trip_id, "title": target.title},
            )

    def respond(self, item_id: str, user_id: str, action: str) -> InviteUpdateResult:
        with self.store.transaction() as conn:
            target = self._load_target(conn, item_id)
            if not target.is_open:
                raise ItemNoLongerOpenError(f"item {item_id} is no longer accepting responses")
            invites = self.store.list_invites(target.item_id, conn=conn)
            updated, result = transition_invite(
                invites=invites,
                user_id=user_id,
                action=action,
                capacity=target.capacity,
                creator_id=target.creator_id,
                now=self.clock(),
            )
            if result.changed:
                self.store.replace_invites(conn, target.item_id, updated)
                self.store.record_audit_event(
                    entity_id=target.item_id,
                    actor_id=user_id,
                    action="rsvp",
                    details={
                        "from": result.previous_status,
                        "to": result.invite.status,
                        "waitlisted": result.waitlisted,
                        "promoted": result.promoted_user_ids,
                    },
                    conn=conn,
                )
        if result.promoted_user_ids:
            logger.info("promoted %s from the waitlist of %s", result.promoted_user_ids, target.item_id)
            self._notify_promoted(target, user_id, result.promoted_user_ids)
        return result

    def set_attendees(self, item_id: str, requester_id: str, attendee_ids: Iterable[str]) -> list[Invite]:
        """Creator edit of the attendee list; returns the resulting invites."""
        wanted: list[str] = []
        for attendee_id in attendee_ids:
            attendee_id = str(attendee_id or "").strip()
            if attendee_id and attendee_id not in wanted:
                wanted.append(attendee_id)
        now = self.clock()
        with self.store.transaction() as conn:
            target = self._load_target(conn, item_id)
            if target.creator_id != requester_id:
                raise PermissionDeniedError("only the organizer can change the attendee list")
            if not target.is_open:
                raise ItemNoLongerOpenError(f"item {item_id} is no longer accepting changes")
            invites = self.store.list_invites(target.item_id, conn=conn)
            if not any(invite.user_id == target.creator_id for invite in invites):
                invites = seed_invites(target.item_id, target.item_kind, target.creator_id, [], now) + invites
            present = {invite.user_id for invite in invites}
            dropped = [uid for uid in present if uid not in wanted]
            remaining, removed, promoted = remove_attendees(invites, dropped, target.capacity, target.creator_id, now)
            added = [
                Invite(item_id=target.item_id, item_kind=target.item_kind, user_id=uid, created_at=now)
                for uid in wanted
                if uid not in present
            ]
            final = remaining + added
            self.store.replace_invites(conn, target.item_id, final)
            self.store.record_audit_event(
                entity_id=target.item_id,
                actor_id=requester_id,
                action="set_attendees",
                details={
                    "added": [invite.user_id for invite in added],
                    "removed": [invite.user_id for invite in removed],
                    "promoted": promoted,
                },
                conn=conn,
            )
        if promoted:
            self._notify_promoted(target, requester_id, promoted)
        return final
