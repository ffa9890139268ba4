from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from tripboard.config_manager import ConfigManager
from tripboard.errors import TripboardError, describe_error
from tripboard.ics_export import build_calendar
from tripboard.models import AppConfig
from tripboard.notifier import WebhookNotifier
from tripboard.projections import entry_view, load_proposal_views, schedule_conflicts
from tripboard.proposals import ProposalController
from tripboard.rsvp import RsvpService
from tripboard.state_store import StateStore
from tripboard.voting import RankedVotingAggregator, ranks_used_by


logger = logging.getLogger(__name__)


class ProposeRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    voting_deadline: str | None = None


class ScheduleRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class RankRequest(BaseModel):
    rank_value: Any = None


class RsvpRequest(BaseModel):
    action: str = Field(min_length=1, max_length=32)


class AttendeesRequest(BaseModel):
    attendee_ids: list[str] = Field(default_factory=list)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)

    def config(self) -> AppConfig:
        return self.config_manager.load()

    def notifier(self, config: AppConfig) -> WebhookNotifier:
        return WebhookNotifier(config.notifications)

    def proposals(self) -> ProposalController:
        config = self.config()
        return ProposalController(self.state_store, config, notifier=self.notifier(config))

    def voting(self) -> RankedVotingAggregator:
        return RankedVotingAggregator(self.state_store, self.config().voting)

    def rsvp(self) -> RsvpService:
        return RsvpService(self.state_store, notifier=self.notifier(self.config()))


def _member(x_member_id: str | None) -> str:
    member_id = str(x_member_id or "").strip()
    if not member_id:
        raise HTTPException(status_code=401, detail="X-Member-Id header is required")
    return member_id


def create_app(config_path: str | None = None, state_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("TRIPBOARD_CONFIG_PATH", "config.yaml")
    state_path = state_path or os.getenv("TRIPBOARD_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Tripboard", version="0.1.0")
    app.state.context = context

    @app.exception_handler(TripboardError)
    async def _tripboard_error(request: Request, exc: TripboardError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        body: dict[str, Any] = {"detail": str(exc), "code": exc.code, "message": describe_error(exc)}
        fields = getattr(exc, "fields", None)
        if fields:
            body["fields"] = list(fields)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/api/trips/{trip_id}/proposals")
    def create_proposal(
        trip_id: str, request: ProposeRequest, x_member_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        proposal = app.state.context.proposals().propose(
            trip_id, request.payload, _member(x_member_id), request.voting_deadline
        )
        return {"proposal": proposal.to_dict()}

    @app.get("/api/trips/{trip_id}/proposals")
    def list_proposals(trip_id: str, kind: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        member_id = _member(x_member_id)
        ctx = app.state.context
        views = load_proposal_views(ctx.state_store, ctx.config(), trip_id, kind.lower(), member_id)
        proposals = ctx.state_store.list_proposals(trip_id, kind=kind.lower())
        ranks = ctx.state_store.list_ranks([p.id for p in proposals]) if proposals else []
        return {"proposals": views, "ranks_used": sorted(ranks_used_by(member_id, proposals, ranks))}

    @app.post("/api/proposals/{proposal_id}/rank")
    def submit_rank(
        proposal_id: str, request: RankRequest, x_member_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        rank_set = app.state.context.voting().submit_rank(proposal_id, _member(x_member_id), request.rank_value)
        return rank_set.to_dict()

    @app.get("/api/proposals/{proposal_id}/ranking")
    def get_ranking(proposal_id: str) -> dict[str, Any]:
        return {"proposal_id": proposal_id, "ranking": app.state.context.voting().average_ranking(proposal_id)}

    @app.post("/api/proposals/{proposal_id}/cancel")
    def cancel_proposal(proposal_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        proposal = app.state.context.proposals().cancel(proposal_id, _member(x_member_id))
        return {"proposal": proposal.to_dict()}

    @app.post("/api/proposals/{proposal_id}/convert")
    def convert_proposal(proposal_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        member_id = _member(x_member_id)
        entry = app.state.context.proposals().convert(proposal_id, member_id)
        return {"entry": entry_view(entry, member_id)}

    @app.post("/api/items/{item_id}/rsvp")
    def respond(item_id: str, request: RsvpRequest, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        result = app.state.context.rsvp().respond(item_id, _member(x_member_id), request.action)
        return result.to_dict()

    @app.put("/api/items/{item_id}/attendees")
    def set_attendees(
        item_id: str, request: AttendeesRequest, x_member_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        invites = app.state.context.rsvp().set_attendees(item_id, _member(x_member_id), request.attendee_ids)
        return {"invites": [invite.to_dict() for invite in invites]}

    @app.post("/api/trips/{trip_id}/schedule")
    def create_entry(
        trip_id: str, request: ScheduleRequest, x_member_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        member_id = _member(x_member_id)
        entry = app.state.context.proposals().schedule(trip_id, request.payload, member_id)
        return {"entry": entry_view(entry, member_id)}

    @app.post("/api/entries/{entry_id}/cancel")
    def cancel_entry(entry_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        member_id = _member(x_member_id)
        entry = app.state.context.proposals().cancel_entry(entry_id, member_id)
        return {"entry": entry_view(entry, member_id)}

    @app.get("/api/trips/{trip_id}/schedule")
    def get_schedule(trip_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        member_id = _member(x_member_id)
        ctx = app.state.context
        entries, annotations = schedule_conflicts(
            ctx.state_store, ctx.config(), trip_id, member_id, include_proposals=True
        )
        entry_ids = {entry.id for entry in entries}
        return {
            "entries": [entry_view(entry, member_id, annotations.get(entry.id, [])) for entry in entries],
            "proposal_conflicts": {
                item_id: [annotation.to_dict() for annotation in found]
                for item_id, found in annotations.items()
                if item_id not in entry_ids and found
            },
        }

    @app.get("/api/trips/{trip_id}/schedule.ics")
    def export_schedule(trip_id: str, x_member_id: str | None = Header(default=None)) -> Response:
        member_id = _member(x_member_id)
        ctx = app.state.context
        config = ctx.config()
        entries, annotations = schedule_conflicts(ctx.state_store, config, trip_id, member_id)
        body = build_calendar(
            entries,
            member_id,
            annotations,
            default_duration_minutes=config.conflicts.default_duration_minutes,
            calendar_name=f"Trip {trip_id}",
        )
        return Response(content=body, media_type="text/calendar")

    @app.get("/api/audit")
    def audit_events(limit: int = 100, entity_id: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, entity_id=entity_id)}

    return app
