from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from tripboard.errors import (
    AlreadyTerminalError,
    DeadlineInPastError,
    MissingRequiredFieldError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tripboard.models import (
    ENTRY_CANCELED,
    ENTRY_CONFIRMED,
    ITEM_KIND_ENTRY,
    ITEM_KIND_PROPOSAL,
    PROPOSAL_ACTIVE,
    PROPOSAL_CANCELED,
    PROPOSAL_SCHEDULED,
    SCHEDULE_START_FIELDS,
    AppConfig,
    Invite,
    Proposal,
    ProposalPayload,
    Rank,
    ScheduleEntry,
    new_id,
    payload_from_dict,
)
from tripboard.notifier import (
    EVENT_ENTRY_CANCELED,
    EVENT_PROPOSAL_CANCELED,
    EVENT_PROPOSAL_CONVERTED,
    WebhookNotifier,
    dispatch_notification,
)
from tripboard.rsvp import carry_over_invites, seed_invites
from tripboard.state_store import StateStore
from tripboard.timeutils import parse_instant, utc_now
from tripboard.voting import is_binary_kind


logger = logging.getLogger(__name__)


def _location_of(payload: ProposalPayload) -> str:
    for attr in ("location", "address", "origin"):
        value = getattr(payload, attr, "")
        if value:
            return value
    return ""


def _split_payload(payload: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object", fields=["payload"])
    data = dict(payload)
    kind = str(data.pop("kind", "") or "").strip().lower()
    if not kind:
        raise ValidationError("payload is missing: kind", fields=["kind"])
    return kind, data


def build_entry(
    *,
    trip_id: str,
    kind: str,
    created_by: str,
    payload: ProposalPayload,
    source_proposal_id: str = "",
    now: datetime | None = None,
) -> ScheduleEntry:
    start, end, time_label = payload.schedule_window()
    if start is None:
        field = SCHEDULE_START_FIELDS[kind]
        raise MissingRequiredFieldError(f"{kind} needs {field} before it can be scheduled", fields=[field])
    return ScheduleEntry(
        id=new_id(),
        trip_id=trip_id,
        kind=kind,
        created_by=created_by,
        title=payload.display_name,
        start=start,
        end=end,
        time_label=time_label,
        location=_location_of(payload),
        capacity=getattr(payload, "max_capacity", None),
        status=ENTRY_CONFIRMED,
        source_proposal_id=source_proposal_id,
        payload=payload.to_dict(),
        created_at=now or utc_now(),
    )


class ProposalController:
    """Creates proposals and moves them to their terminal states.

    Cancel and convert are mutually exclusive: both go through a
    compare-and-set on ``(status, version)`` so whichever lands second gets
    ``ConflictError`` (or ``AlreadyTerminalError`` once the row is visible).
    """

    def __init__(
        self,
        store: StateStore,
        config: AppConfig,
        notifier: WebhookNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.notifier = notifier
        self.clock = clock

    def propose(
        self,
        trip_id: str,
        payload: dict[str, Any],
        proposer_id: str,
        voting_deadline: str | datetime | None = None,
    ) -> Proposal:
        if not str(trip_id or "").strip():
            raise ValidationError("trip_id is required", fields=["trip_id"])
        if not str(proposer_id or "").strip():
            raise ValidationError("proposer is required", fields=["proposed_by"])
        kind, data = _split_payload(payload)
        typed_payload = payload_from_dict(kind, data)

        now = self.clock()
        try:
            deadline = parse_instant(voting_deadline)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid voting deadline: {voting_deadline!r}", fields=["voting_deadline"]) from exc
        if deadline is not None and deadline <= now:
            raise DeadlineInPastError(
                f"voting deadline {deadline.isoformat()} is not in the future", fields=["voting_deadline"]
            )

        proposal = Proposal(
            id=new_id(),
            trip_id=str(trip_id),
            kind=kind,
            proposed_by=str(proposer_id),
            payload=typed_payload,
            status=PROPOSAL_ACTIVE,
            voting_deadline=deadline,
            created_at=now,
            updated_at=now,
        )
        attendee_ids = list(getattr(typed_payload, "attendee_ids", []) or [])
        with self.store.transaction() as conn:
            self.store.insert_proposal(proposal, conn=conn)
            if attendee_ids:
                invites = seed_invites(proposal.id, ITEM_KIND_PROPOSAL, proposal.proposed_by, attendee_ids, now)
                self.store.replace_invites(conn, proposal.id, invites)
            self.store.record_audit_event(
                entity_id=proposal.id,
                actor_id=proposal.proposed_by,
                action="propose",
                details={"trip_id": proposal.trip_id, "kind": kind, "title": proposal.display_name},
                conn=conn,
            )
        logger.info("proposal %s (%s) created by %s", proposal.id, kind, proposer_id)
        return proposal

    def _load_for_transition(self, conn: Any, proposal_id: str, requester_id: str) -> Proposal:
        proposal = self.store.get_proposal(proposal_id, conn=conn)
        if proposal is None:
            raise NotFoundError(f"proposal {proposal_id} not found")
        if proposal.proposed_by != requester_id:
            raise PermissionDeniedError("only the proposer can do that")
        return proposal

    def cancel(self, proposal_id: str, requester_id: str) -> Proposal:
        with self.store.transaction() as conn:
            proposal = self._load_for_transition(conn, proposal_id, requester_id)
            if not proposal.is_active:
                raise AlreadyTerminalError(f"proposal {proposal_id} is already {proposal.status}")
            updated = self.store.update_proposal_status(
                conn,
                proposal.id,
                expected_status=PROPOSAL_ACTIVE,
                expected_version=proposal.version,
                new_status=PROPOSAL_CANCELED,
                terminal_by=requester_id,
                now=self.clock(),
            )
            removed_ranks = self.store.delete_ranks_for_proposal(conn, proposal.id)
            removed_invites = self.store.delete_invites(conn, proposal.id)
            self.store.record_audit_event(
                entity_id=proposal.id,
                actor_id=requester_id,
                action="cancel",
                details={
                    "title": proposal.display_name,
                    "ranks_removed": len(removed_ranks),
                    "invites_removed": len(removed_invites),
                },
                conn=conn,
            )
        recipients = [rank.voter_id for rank in removed_ranks] + [inv.user_id for inv in removed_invites]
        dispatch_notification(
            self.notifier,
            self.store,
            event=EVENT_PROPOSAL_CANCELED,
            entity_id=proposal.id,
            actor_id=requester_id,
            recipients=recipients,
            payload={"proposal_id": proposal.id, "trip_id": proposal.trip_id, "title": proposal.display_name},
        )
        return updated

    def _within_retry_window(self, proposal: Proposal, requester_id: str) -> bool:
        if proposal.terminal_by != requester_id or proposal.terminal_at is None:
            return False
        elapsed = (self.clock() - proposal.terminal_at).total_seconds()
        return 0 <= elapsed <= self.config.voting.convert_retry_window_seconds

    def _attendees_for(self, proposal: Proposal, ranks: list[Rank]) -> list[str]:
        attendees = list(getattr(proposal.payload, "attendee_ids", []) or [])
        binary = is_binary_kind(proposal.kind, self.config.voting.binary_kinds)
        for rank in ranks:
            if binary and rank.rank_value < 0:
                continue
            if rank.voter_id not in attendees:
                attendees.append(rank.voter_id)
        return attendees

    def convert(self, proposal_id: str, requester_id: str) -> ScheduleEntry:
        now = self.clock()
        with self.store.transaction() as conn:
            proposal = self._load_for_transition(conn, proposal_id, requester_id)
            if proposal.status == PROPOSAL_SCHEDULED and self._within_retry_window(proposal, requester_id):
                existing = self.store.get_entry(proposal.schedule_entry_id, conn=conn)
                if existing is not None:
                    logger.info("convert retry for proposal %s returned entry %s", proposal.id, existing.id)
                    return existing
            if not proposal.is_active:
                raise AlreadyTerminalError(f"proposal {proposal_id} is already {proposal.status}")

            entry = build_entry(
                trip_id=proposal.trip_id,
                kind=proposal.kind,
                created_by=proposal.proposed_by,
                payload=proposal.payload,
                source_proposal_id=proposal.id,
                now=now,
            )
            ranks = self.store.list_ranks([proposal.id], conn=conn)
            proposal_invites = self.store.delete_invites(conn, proposal.id)
            if proposal_invites:
                entry.invites = carry_over_invites(
                    proposal_invites,
                    item_id=entry.id,
                    item_kind=ITEM_KIND_ENTRY,
                    creator_id=entry.created_by,
                    capacity=entry.capacity,
                    now=now,
                )
                known = {invite.user_id for invite in entry.invites}
                extra = [uid for uid in self._attendees_for(proposal, ranks) if uid not in known]
                entry.invites.extend(
                    Invite(item_id=entry.id, item_kind=ITEM_KIND_ENTRY, user_id=uid, created_at=now) for uid in extra
                )
            else:
                entry.invites = seed_invites(
                    entry.id, ITEM_KIND_ENTRY, entry.created_by, self._attendees_for(proposal, ranks), now
                )

            self.store.update_proposal_status(
                conn,
                proposal.id,
                expected_status=PROPOSAL_ACTIVE,
                expected_version=proposal.version,
                new_status=PROPOSAL_SCHEDULED,
                terminal_by=requester_id,
                schedule_entry_id=entry.id,
                now=now,
            )
            self.store.insert_entry(entry, conn=conn)
            self.store.delete_ranks_for_proposal(conn, proposal.id)
            self.store.record_audit_event(
                entity_id=proposal.id,
                actor_id=requester_id,
                action="convert",
                details={"schedule_entry_id": entry.id, "title": entry.title, "invites": len(entry.invites)},
                conn=conn,
            )
        dispatch_notification(
            self.notifier,
            self.store,
            event=EVENT_PROPOSAL_CONVERTED,
            entity_id=proposal.id,
            actor_id=requester_id,
            recipients=[invite.user_id for invite in entry.invites],
            payload={"proposal_id": proposal.id, "schedule_entry_id": entry.id, "title": entry.title},
        )
        return entry

    def schedule(self, trip_id: str, payload: dict[str, Any], creator_id: str) -> ScheduleEntry:
        """Save an item straight onto the calendar without a vote."""
        if not str(trip_id or "").strip():
            raise ValidationError("trip_id is required", fields=["trip_id"])
        if not str(creator_id or "").strip():
            raise ValidationError("creator is required", fields=["created_by"])
        kind, data = _split_payload(payload)
        typed_payload = payload_from_dict(kind, data)
        now = self.clock()
        entry = build_entry(trip_id=str(trip_id), kind=kind, created_by=str(creator_id), payload=typed_payload, now=now)
        entry.invites = seed_invites(
            entry.id, ITEM_KIND_ENTRY, entry.created_by, getattr(typed_payload, "attendee_ids", []) or [], now
        )
        with self.store.transaction() as conn:
            self.store.insert_entry(entry, conn=conn)
            self.store.record_audit_event(
                entity_id=entry.id,
                actor_id=entry.created_by,
                action="schedule",
                details={"trip_id": entry.trip_id, "kind": kind, "title": entry.title},
                conn=conn,
            )
        return entry

    def cancel_entry(self, entry_id: str, requester_id: str) -> ScheduleEntry:
        with self.store.transaction() as conn:
            entry = self.store.get_entry(entry_id, conn=conn)
            if entry is None:
                raise NotFoundError(f"schedule entry {entry_id} not found")
            if entry.created_by != requester_id:
                raise PermissionDeniedError("only the organizer can cancel this")
            if entry.status != ENTRY_CONFIRMED:
                raise AlreadyTerminalError(f"schedule entry {entry_id} is already {entry.status}")
            self.store.update_entry_status(
                conn, entry.id, expected_status=ENTRY_CONFIRMED, new_status=ENTRY_CANCELED
            )
            removed = self.store.delete_invites(conn, entry.id)
            self.store.record_audit_event(
                entity_id=entry.id,
                actor_id=requester_id,
                action="cancel_entry",
                details={"title": entry.title, "invites_removed": len(removed)},
                conn=conn,
            )
        entry.status = ENTRY_CANCELED
        entry.invites = []
        dispatch_notification(
            self.notifier,
            self.store,
            event=EVENT_ENTRY_CANCELED,
            entity_id=entry.id,
            actor_id=requester_id,
            recipients=[invite.user_id for invite in removed],
            payload={"schedule_entry_id": entry.id, "trip_id": entry.trip_id, "title": entry.title},
        )
        return entry
