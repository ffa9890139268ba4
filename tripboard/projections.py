from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Any, Iterable

from tripboard.conflicts import detect_conflicts
from tripboard.models import (
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_PENDING,
    INVITE_WAITLISTED,
    PROPOSAL_ACTIVE,
    AppConfig,
    ConflictAnnotation,
    Invite,
    Proposal,
    Rank,
    ScheduleEntry,
)
from tripboard.rsvp import status_label, transition_invite
from tripboard.state_store import StateStore
from tripboard.timeutils import resolve_timezone, utc_now
from tripboard.voting import aggregate, apply_rank_submission, is_binary_kind, ranks_for


def proposals_key(trip_id: str, kind: str) -> str:
    return f"trips/{trip_id}/proposals/{kind}"


def schedule_key(trip_id: str) -> str:
    return f"trips/{trip_id}/schedule"


def needs_attention(
    *,
    invite_status: str | None = None,
    proposal: Proposal | None = None,
    has_invites: bool = False,
    now: datetime | None = None,
    warning_hours: int = 48,
) -> bool:
    if invite_status in (INVITE_PENDING, INVITE_WAITLISTED):
        return True
    if proposal is None or not proposal.is_active or proposal.voting_deadline is None:
        return False
    # A proposal with an invite list only asks its invitees to weigh in.
    if has_invites and invite_status is None:
        return False
    remaining = proposal.voting_deadline - (now or utc_now())
    return timedelta(0) < remaining < timedelta(hours=warning_hours)


def invite_counts(entry: ScheduleEntry) -> dict[str, int]:
    counts = {INVITE_ACCEPTED: 0, INVITE_PENDING: 0, INVITE_DECLINED: 0, INVITE_WAITLISTED: 0}
    for invite in entry.invites:
        counts[invite.status] = counts.get(invite.status, 0) + 1
    counts["total"] = len(entry.invites)
    return counts


def proposal_view(
    proposal: Proposal,
    ranks: Iterable[Rank],
    viewer_id: str,
    binary_kinds: Iterable[str],
    *,
    invites: Iterable[Invite] = (),
    now: datetime | None = None,
    warning_hours: int = 48,
) -> dict[str, Any]:
    binary_kinds = list(binary_kinds)
    invites = list(invites)
    invite = next((item for item in invites if item.user_id == viewer_id), None)
    status = invite.status if invite else None
    own_ranks = sorted(ranks_for(proposal.id, ranks), key=lambda r: (r.rank_value, r.voter_id))
    current = next((r.rank_value for r in own_ranks if r.voter_id == viewer_id), None)
    view = proposal.to_dict()
    view["display_name"] = proposal.display_name
    view["ranks"] = [rank.to_dict() for rank in own_ranks]
    view["current_user_rank"] = current
    view["vote_count"] = len(own_ranks)
    summary = aggregate(proposal, own_ranks, binary_kinds)
    if is_binary_kind(proposal.kind, binary_kinds):
        view["thumbs"] = summary
        view["average_ranking"] = None
    else:
        view["thumbs"] = None
        view["average_ranking"] = summary
    view["invites"] = [item.to_dict() for item in invites]
    view["viewer_status"] = status
    view["viewer_status_label"] = status_label(status) if status else ""
    view["needs_attention"] = needs_attention(
        invite_status=status,
        proposal=proposal,
        has_invites=bool(invites),
        now=now,
        warning_hours=warning_hours,
    )
    return view


def entry_view(
    entry: ScheduleEntry,
    viewer_id: str,
    conflicts: Iterable[ConflictAnnotation] = (),
) -> dict[str, Any]:
    invite = entry.invite_for(viewer_id)
    status = INVITE_ACCEPTED if entry.created_by == viewer_id else (invite.status if invite else None)
    view = entry.to_dict()
    view["viewer_status"] = status
    view["viewer_status_label"] = status_label(status) if status else ""
    view["counts"] = invite_counts(entry)
    view["conflicts"] = [annotation.to_dict() for annotation in conflicts]
    view["needs_attention"] = needs_attention(invite_status=status)
    return view


def speculate_rank(
    view: list[dict[str, Any]],
    *,
    proposal_id: str,
    voter_id: str,
    rank_value: int,
    binary_kinds: Iterable[str],
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Locally apply a rank submission to a cached proposal list."""
    binary_kinds = list(binary_kinds)
    proposals = [Proposal.from_dict(item) for item in view]
    target = next((p for p in proposals if p.id == proposal_id), None)
    if target is None:
        return view
    ranks = [Rank.from_dict(rank) for item in view for rank in item.get("ranks") or []]
    updated, _, _ = apply_rank_submission(
        proposal=target,
        scope=proposals,
        ranks=ranks,
        voter_id=voter_id,
        rank_value=rank_value,
        binary_kinds=binary_kinds,
        now=now,
    )
    return replace_ranks(view, updated, voter_id, binary_kinds)


def replace_ranks(
    view: list[dict[str, Any]],
    ranks: Iterable[Rank],
    viewer_id: str,
    binary_kinds: Iterable[str],
) -> list[dict[str, Any]]:
    ranks = list(ranks)
    binary_kinds = list(binary_kinds)
    output: list[dict[str, Any]] = []
    for item in view:
        proposal = Proposal.from_dict(item)
        fresh = proposal_view(proposal, ranks, viewer_id, binary_kinds)
        fresh["needs_attention"] = item.get("needs_attention", fresh["needs_attention"])
        merged = copy.deepcopy(item)
        for key in ("ranks", "current_user_rank", "vote_count", "thumbs", "average_ranking"):
            merged[key] = fresh[key]
        output.append(merged)
    return output


def speculate_rsvp(
    view: list[dict[str, Any]],
    *,
    item_id: str,
    user_id: str,
    action: str,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Locally apply an RSVP response to a cached schedule list."""
    output: list[dict[str, Any]] = []
    for item in view:
        if item.get("id") != item_id:
            output.append(item)
            continue
        entry = ScheduleEntry.from_dict(item)
        entry.invites, _ = transition_invite(
            invites=entry.invites,
            user_id=user_id,
            action=action,
            capacity=entry.capacity,
            creator_id=entry.created_by,
            now=now,
        )
        merged = copy.deepcopy(item)
        fresh = entry_view(entry, user_id)
        for key in ("invites", "viewer_status", "viewer_status_label", "counts", "needs_attention"):
            merged[key] = fresh[key]
        output.append(merged)
    return output


def without_item(view: list[dict[str, Any]], item_id: str) -> list[dict[str, Any]]:
    return [item for item in view if item.get("id") != item_id]


def load_proposal_views(
    store: StateStore,
    config: AppConfig,
    trip_id: str,
    kind: str,
    viewer_id: str,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    proposals = store.list_proposals(trip_id, kind=kind, status=PROPOSAL_ACTIVE)
    ranks = store.list_ranks([p.id for p in proposals]) if proposals else []
    return [
        proposal_view(
            proposal,
            ranks,
            viewer_id,
            config.voting.binary_kinds,
            invites=store.list_invites(proposal.id),
            now=now,
            warning_hours=config.voting.deadline_warning_hours,
        )
        for proposal in proposals
    ]


def schedule_conflicts(
    store: StateStore,
    config: AppConfig,
    trip_id: str,
    viewer_id: str,
    *,
    include_proposals: bool = False,
) -> tuple[list[ScheduleEntry], dict[str, list[ConflictAnnotation]]]:
    entries = store.list_entries(trip_id)
    candidates = store.list_proposals(trip_id, status=PROPOSAL_ACTIVE) if include_proposals else []
    annotations = detect_conflicts(
        viewer_id,
        entries,
        candidates,
        default_duration_minutes=config.conflicts.default_duration_minutes,
        tz=resolve_timezone(config.conflicts.timezone),
    )
    return entries, annotations


def load_schedule_views(store: StateStore, config: AppConfig, trip_id: str, viewer_id: str) -> list[dict[str, Any]]:
    entries, annotations = schedule_conflicts(store, config, trip_id, viewer_id)
    return [entry_view(entry, viewer_id, annotations.get(entry.id, [])) for entry in entries]
