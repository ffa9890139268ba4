from __future__ import annotations

from datetime import datetime
from functools import partial
from typing import Any, Callable

from tripboard.coordinator import MutationSpec, OptimisticMutationCoordinator
from tripboard.models import AppConfig, InviteUpdateResult, Proposal, Rank, RankSet, ScheduleEntry
from tripboard.projections import (
    entry_view,
    load_proposal_views,
    load_schedule_views,
    proposal_view,
    proposals_key,
    replace_ranks,
    schedule_key,
    speculate_rank,
    speculate_rsvp,
    without_item,
)
from tripboard.proposals import ProposalController
from tripboard.rsvp import RsvpService
from tripboard.state_store import StateStore
from tripboard.timeutils import utc_now
from tripboard.voting import RankedVotingAggregator, ranks_used_by


class TripSession:
    """One member's view of a trip, with every mutation routed through the coordinator."""

    def __init__(
        self,
        *,
        viewer_id: str,
        store: StateStore,
        config: AppConfig,
        proposals: ProposalController,
        voting: RankedVotingAggregator,
        rsvp: RsvpService,
        coordinator: OptimisticMutationCoordinator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.viewer_id = viewer_id
        self.store = store
        self.config = config
        self.proposals = proposals
        self.voting = voting
        self.rsvp = rsvp
        self.coordinator = coordinator or OptimisticMutationCoordinator()
        self.clock = clock

    # reads

    def fetch_proposals(self, trip_id: str, kind: str) -> list[dict[str, Any]]:
        return load_proposal_views(self.store, self.config, trip_id, kind, self.viewer_id, now=self.clock())

    def fetch_schedule(self, trip_id: str) -> list[dict[str, Any]]:
        return load_schedule_views(self.store, self.config, trip_id, self.viewer_id)

    def proposals_view(self, trip_id: str, kind: str) -> list[dict[str, Any]]:
        return self.coordinator.read(proposals_key(trip_id, kind), lambda: self.fetch_proposals(trip_id, kind))

    def schedule_view(self, trip_id: str) -> list[dict[str, Any]]:
        return self.coordinator.read(schedule_key(trip_id), lambda: self.fetch_schedule(trip_id))

    def ranks_used(self, trip_id: str, kind: str) -> set[int]:
        view = self.proposals_view(trip_id, kind)
        proposals = [Proposal.from_dict(item) for item in view]
        ranks = [Rank.from_dict(rank) for item in view for rank in item.get("ranks") or []]
        return ranks_used_by(self.viewer_id, proposals, ranks)

    def _proposal_scope(self, proposal_id: str) -> tuple[str, str] | None:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            return None
        return proposal.trip_id, proposal.kind

    def _rsvp_views(self, item_id: str) -> list[str]:
        entry = self.store.get_entry(item_id)
        if entry is not None:
            return [schedule_key(entry.trip_id)]
        proposal = self.store.get_proposal(item_id)
        if proposal is None:
            return []
        return [schedule_key(proposal.trip_id), proposals_key(proposal.trip_id, proposal.kind)]

    # mutations

    def propose(self, trip_id: str, payload: dict[str, Any], voting_deadline: Any = None) -> Proposal:
        kind = str((payload or {}).get("kind", "") or "").strip().lower()
        key = proposals_key(trip_id, kind)

        def commit(proposal: Proposal, views: dict[str, Any]) -> dict[str, Any]:
            if key not in views:
                return {}
            fresh = proposal_view(
                proposal,
                [],
                self.viewer_id,
                self.config.voting.binary_kinds,
                invites=self.store.list_invites(proposal.id),
                now=self.clock(),
                warning_hours=self.config.voting.deadline_warning_hours,
            )
            return {key: without_item(views[key], proposal.id) + [fresh]}

        return self.coordinator.apply(
            MutationSpec(
                entity_key=key,
                durable=partial(self.proposals.propose, trip_id, payload, self.viewer_id, voting_deadline),
                commit=commit,
                invalidate=[key],
                label="propose",
            )
        )

    def submit_rank(self, proposal_id: str, rank_value: int) -> RankSet:
        scope = self._proposal_scope(proposal_id)
        durable = partial(self.voting.submit_rank, proposal_id, self.viewer_id, rank_value)
        if scope is None:
            return self.coordinator.apply(MutationSpec(entity_key=f"proposal/{proposal_id}", durable=durable))
        key = proposals_key(*scope)
        binary_kinds = self.config.voting.binary_kinds

        def speculate(view: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return speculate_rank(
                view,
                proposal_id=proposal_id,
                voter_id=self.viewer_id,
                rank_value=rank_value,
                binary_kinds=binary_kinds,
                now=self.clock(),
            )

        def commit(rank_set: RankSet, views: dict[str, Any]) -> dict[str, Any]:
            if key not in views:
                return {}
            cleared = {(rank.proposal_id, rank.voter_id) for rank in rank_set.cleared}
            ranks = [
                Rank.from_dict(rank)
                for item in views[key]
                for rank in item.get("ranks") or []
                if rank.get("proposal_id") != proposal_id
                and (rank.get("proposal_id"), rank.get("voter_id")) not in cleared
            ]
            ranks.extend(rank_set.ranks)
            return {key: replace_ranks(views[key], ranks, self.viewer_id, binary_kinds)}

        return self.coordinator.apply(
            MutationSpec(
                entity_key=key,
                durable=durable,
                speculative={key: speculate},
                commit=commit,
                invalidate=[key],
                label="rank",
            )
        )

    def respond(self, item_id: str, action: str) -> InviteUpdateResult:
        view_keys = self._rsvp_views(item_id)
        durable = partial(self.rsvp.respond, item_id, self.viewer_id, action)
        if not view_keys:
            return self.coordinator.apply(MutationSpec(entity_key=f"item/{item_id}", durable=durable))
        key = view_keys[0]

        def speculate(view: list[dict[str, Any]]) -> list[dict[str, Any]]:
            return speculate_rsvp(view, item_id=item_id, user_id=self.viewer_id, action=action, now=self.clock())

        def commit(result: InviteUpdateResult, views: dict[str, Any]) -> dict[str, Any]:
            entry = self.store.get_entry(item_id)
            if key not in views or entry is None:
                return {}
            updated = []
            for item in views[key]:
                if item.get("id") == item_id:
                    fresh = entry_view(entry, self.viewer_id)
                    fresh["conflicts"] = item.get("conflicts", [])
                    item = fresh
                updated.append(item)
            return {key: updated}

        return self.coordinator.apply(
            MutationSpec(
                entity_key=f"item/{item_id}",
                durable=durable,
                speculative={key: speculate},
                commit=commit,
                invalidate=view_keys,
                label="rsvp",
            )
        )

    def cancel(self, proposal_id: str) -> Proposal:
        scope = self._proposal_scope(proposal_id)
        durable = partial(self.proposals.cancel, proposal_id, self.viewer_id)
        if scope is None:
            return self.coordinator.apply(MutationSpec(entity_key=f"proposal/{proposal_id}", durable=durable))
        key = proposals_key(*scope)
        return self.coordinator.apply(
            MutationSpec(
                entity_key=key,
                durable=durable,
                speculative={key: lambda view: without_item(view, proposal_id)},
                invalidate=[key],
                label="cancel",
            )
        )

    def convert(self, proposal_id: str) -> ScheduleEntry:
        scope = self._proposal_scope(proposal_id)
        durable = partial(self.proposals.convert, proposal_id, self.viewer_id)
        if scope is None:
            return self.coordinator.apply(MutationSpec(entity_key=f"proposal/{proposal_id}", durable=durable))
        trip_id, kind = scope
        key = proposals_key(trip_id, kind)
        calendar_key = schedule_key(trip_id)

        def commit(entry: ScheduleEntry, views: dict[str, Any]) -> dict[str, Any]:
            if calendar_key not in views:
                return {}
            return {calendar_key: without_item(views[calendar_key], entry.id) + [entry_view(entry, self.viewer_id)]}

        return self.coordinator.apply(
            MutationSpec(
                entity_key=key,
                durable=durable,
                speculative={key: lambda view: without_item(view, proposal_id)},
                commit=commit,
                invalidate=[key, calendar_key],
                label="convert",
            )
        )
