from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable

from tripboard.errors import InvalidRankValueError, NotFoundError, ProposalNotActiveError, ValidationError
from tripboard.models import PROPOSAL_ACTIVE, Proposal, Rank, RankSet, VotingConfig
from tripboard.state_store import StateStore
from tripboard.timeutils import utc_now


BINARY_VALUES = (-1, 1)


def is_binary_kind(kind: str, binary_kinds: Iterable[str]) -> bool:
    return kind in set(binary_kinds)


def validate_rank_value(kind: str, value: Any, binary_kinds: Iterable[str]) -> int:
    # bool is an int subclass; True must not count as rank 1.
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        else:
            raise InvalidRankValueError(f"rank value must be an integer, got {value!r}")
    if is_binary_kind(kind, binary_kinds):
        if value not in BINARY_VALUES:
            raise InvalidRankValueError(f"{kind} votes must be -1 or 1, got {value}")
        return value
    if value < 1:
        raise InvalidRankValueError(f"{kind} ranks must be positive, got {value}")
    return value


def same_scope(a: Proposal, b: Proposal) -> bool:
    return a.trip_id == b.trip_id and a.kind == b.kind


def apply_rank_submission(
    *,
    proposal: Proposal,
    scope: Iterable[Proposal],
    ranks: Iterable[Rank],
    voter_id: str,
    rank_value: int,
    binary_kinds: Iterable[str],
    now: datetime | None = None,
) -> tuple[list[Rank], list[Rank], Rank | None]:
    """Apply one voter's submission to the ranks of a proposal scope.

    ``scope`` holds the proposals sharing the trip and kind of ``proposal``;
    ``ranks`` holds every current rank on them. Returns
    ``(updated_ranks, cleared_ranks, written_rank)``: re-submitting a held
    value clears it, and for ordinal kinds the value is vacated from every
    other active proposal in the scope held by the same voter.
    """
    if not proposal.is_active:
        raise ProposalNotActiveError(f"proposal {proposal.id} is {proposal.status}")
    binary_kinds = list(binary_kinds)
    value = validate_rank_value(proposal.kind, rank_value, binary_kinds)
    now = now or utc_now()

    active_ids = {p.id for p in scope if p.is_active and same_scope(p, proposal)}
    active_ids.add(proposal.id)

    updated: list[Rank] = []
    cleared: list[Rank] = []
    existing: Rank | None = None
    for rank in ranks:
        if rank.voter_id == voter_id and rank.proposal_id == proposal.id:
            existing = rank
            continue
        updated.append(rank)

    if existing is not None and existing.rank_value == value:
        cleared.append(existing)
        return updated, cleared, None

    if not is_binary_kind(proposal.kind, binary_kinds):
        kept: list[Rank] = []
        for rank in updated:
            if rank.voter_id == voter_id and rank.rank_value == value and rank.proposal_id in active_ids:
                cleared.append(rank)
                continue
            kept.append(rank)
        updated = kept

    written = Rank(proposal_id=proposal.id, voter_id=voter_id, rank_value=value, updated_at=now)
    updated.append(written)
    return updated, cleared, written


def ranks_for(proposal_id: str, ranks: Iterable[Rank]) -> list[Rank]:
    return [rank for rank in ranks if rank.proposal_id == proposal_id]


def average_ranking(ranks: Iterable[Rank]) -> float | None:
    values = [rank.rank_value for rank in ranks]
    if not values:
        return None
    return sum(values) / len(values)


def thumbs_tally(ranks: Iterable[Rank]) -> dict[str, int]:
    tally = {"up": 0, "down": 0}
    for rank in ranks:
        if rank.rank_value > 0:
            tally["up"] += 1
        elif rank.rank_value < 0:
            tally["down"] += 1
    return tally


def aggregate(proposal: Proposal, ranks: Iterable[Rank], binary_kinds: Iterable[str]) -> float | dict[str, int] | None:
    own = ranks_for(proposal.id, ranks)
    if is_binary_kind(proposal.kind, binary_kinds):
        return thumbs_tally(own)
    return average_ranking(own)


def build_rank_set(proposal_id: str, viewer_id: str, ranks: Iterable[Rank], cleared: Iterable[Rank] = ()) -> RankSet:
    ordered = sorted(ranks_for(proposal_id, ranks), key=lambda rank: (rank.rank_value, rank.voter_id))
    return RankSet(proposal_id=proposal_id, viewer_id=viewer_id, ranks=ordered, cleared=list(cleared))


def ranks_used_by(voter_id: str, proposals: Iterable[Proposal], ranks: Iterable[Rank]) -> set[int]:
    active_ids = {proposal.id for proposal in proposals if proposal.is_active}
    return {
        rank.rank_value
        for rank in ranks
        if rank.voter_id == voter_id and rank.proposal_id in active_ids
    }


class RankedVotingAggregator:
    """Durable rank submissions; one transaction per submission."""

    def __init__(self, store: StateStore, config: VotingConfig, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    def submit_rank(self, proposal_id: str, voter_id: str, rank_value: int) -> RankSet:
        if not str(voter_id or "").strip():
            raise ValidationError("voter is required", fields=["voter_id"])
        with self.store.transaction() as conn:
            proposal = self.store.get_proposal(proposal_id, conn=conn)
            if proposal is None:
                raise NotFoundError(f"proposal {proposal_id} not found")
            scope = self.store.list_proposals(proposal.trip_id, kind=proposal.kind, status=PROPOSAL_ACTIVE, conn=conn)
            before = self.store.list_ranks([p.id for p in scope] or [proposal.id], conn=conn)
            updated, cleared, written = apply_rank_submission(
                proposal=proposal,
                scope=scope,
                ranks=before,
                voter_id=voter_id,
                rank_value=rank_value,
                binary_kinds=self.config.binary_kinds,
                now=self.clock(),
            )
            for rank in cleared:
                self.store.delete_rank(conn, rank.proposal_id, rank.voter_id)
            if written is not None:
                self.store.upsert_rank(conn, written)
            self.store.record_audit_event(
                entity_id=proposal.id,
                actor_id=voter_id,
                action="rank" if written is not None else "unrank",
                details={
                    "rank_value": rank_value,
                    "cleared": [{"proposal_id": r.proposal_id, "rank_value": r.rank_value} for r in cleared],
                },
                conn=conn,
            )
        return build_rank_set(proposal.id, voter_id, updated, cleared)

    def average_ranking(self, proposal_id: str) -> float | dict[str, int] | None:
        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"proposal {proposal_id} not found")
        return aggregate(proposal, self.store.list_ranks([proposal.id]), self.config.binary_kinds)
