from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from tripboard.errors import ValidationError
from tripboard.timeutils import parse_instant, serialize_datetime, utc_now


PROPOSAL_KINDS = ("hotel", "flight", "restaurant", "activity")

PROPOSAL_ACTIVE = "active"
PROPOSAL_SCHEDULED = "scheduled"
PROPOSAL_CANCELED = "canceled"
PROPOSAL_STATUSES = (PROPOSAL_ACTIVE, PROPOSAL_SCHEDULED, PROPOSAL_CANCELED)

ENTRY_CONFIRMED = "confirmed"
ENTRY_CANCELED = "canceled"

INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_DECLINED = "declined"
INVITE_WAITLISTED = "waitlisted"
INVITE_STATUSES = (INVITE_PENDING, INVITE_ACCEPTED, INVITE_DECLINED, INVITE_WAITLISTED)

ITEM_KIND_PROPOSAL = "proposal"
ITEM_KIND_ENTRY = "entry"


def new_id() -> str:
    return uuid.uuid4().hex


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _optional_float(data: dict[str, Any], key: str, invalid: list[str]) -> float | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        invalid.append(key)
        return None


def _optional_instant(data: dict[str, Any], key: str, invalid: list[str]) -> datetime | None:
    try:
        return parse_instant(data.get(key))
    except (TypeError, ValueError):
        invalid.append(key)
        return None


@dataclass
class VotingConfig:
    binary_kinds: list[str] = field(default_factory=lambda: ["restaurant"])
    convert_retry_window_seconds: int = 300
    deadline_warning_hours: int = 48

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "VotingConfig":
        data = data or {}
        raw_kinds = data.get("binary_kinds", ["restaurant"])
        if not isinstance(raw_kinds, list):
            raw_kinds = ["restaurant"]
        return cls(
            binary_kinds=[str(x).strip().lower() for x in raw_kinds if str(x).strip().lower() in PROPOSAL_KINDS],
            convert_retry_window_seconds=max(0, int(data.get("convert_retry_window_seconds", 300))),
            deadline_warning_hours=max(1, int(data.get("deadline_warning_hours", 48))),
        )


@dataclass
class ConflictConfig:
    default_duration_minutes: int = 60
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConflictConfig":
        data = data or {}
        return cls(
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 60))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class NotificationConfig:
    webhook_url: str = ""
    api_key: str = ""
    timeout_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NotificationConfig":
        data = data or {}
        return cls(
            webhook_url=str(data.get("webhook_url", "")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 10))),
        )


@dataclass
class AppConfig:
    voting: VotingConfig = field(default_factory=VotingConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            voting=VotingConfig.from_dict(data.get("voting")),
            conflicts=ConflictConfig.from_dict(data.get("conflicts")),
            notifications=NotificationConfig.from_dict(data.get("notifications")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class HotelPayload:
    kind: ClassVar[str] = "hotel"

    name: str = ""
    location: str = ""
    check_in: datetime | None = None
    check_out: datetime | None = None
    price_per_night: float | None = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HotelPayload":
        invalid: list[str] = []
        payload = cls(
            name=_text(data.get("name")),
            location=_text(data.get("location")),
            check_in=_optional_instant(data, "check_in", invalid),
            check_out=_optional_instant(data, "check_out", invalid),
            price_per_night=_optional_float(data, "price_per_night", invalid),
            notes=_text(data.get("notes")),
        )
        _raise_if_invalid(cls.kind, payload.missing_fields(), invalid)
        if payload.check_in and payload.check_out and payload.check_out <= payload.check_in:
            raise ValidationError("check_out must be later than check_in", fields=["check_out"])
        return payload

    def missing_fields(self) -> list[str]:
        return [] if self.name else ["name"]

    @property
    def display_name(self) -> str:
        return self.name

    def schedule_window(self) -> tuple[datetime | None, datetime | None, str]:
        # A stay is placed on the calendar as its check-in moment.
        return self.check_in, None, ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "location": self.location,
            "check_in": serialize_datetime(self.check_in),
            "check_out": serialize_datetime(self.check_out),
            "price_per_night": self.price_per_night,
            "notes": self.notes,
        }


@dataclass
class FlightPayload:
    kind: ClassVar[str] = "flight"

    origin: str = ""
    destination: str = ""
    airline: str = ""
    flight_number: str = ""
    departure_time: datetime | None = None
    arrival_time: datetime | None = None
    price: float | None = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FlightPayload":
        invalid: list[str] = []
        payload = cls(
            origin=_text(data.get("origin")).upper(),
            destination=_text(data.get("destination")).upper(),
            airline=_text(data.get("airline")),
            flight_number=_text(data.get("flight_number")).upper(),
            departure_time=_optional_instant(data, "departure_time", invalid),
            arrival_time=_optional_instant(data, "arrival_time", invalid),
            price=_optional_float(data, "price", invalid),
            notes=_text(data.get("notes")),
        )
        _raise_if_invalid(cls.kind, payload.missing_fields(), invalid)
        if payload.departure_time and payload.arrival_time and payload.arrival_time <= payload.departure_time:
            raise ValidationError("arrival_time must be later than departure_time", fields=["arrival_time"])
        return payload

    def missing_fields(self) -> list[str]:
        return [name for name in ("origin", "destination") if not getattr(self, name)]

    @property
    def display_name(self) -> str:
        label = " ".join(part for part in (self.airline, self.flight_number) if part)
        route = f"{self.origin} → {self.destination}"
        return f"{label} - {route}" if label else route

    def schedule_window(self) -> tuple[datetime | None, datetime | None, str]:
        return self.departure_time, self.arrival_time, ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "destination": self.destination,
            "airline": self.airline,
            "flight_number": self.flight_number,
            "departure_time": serialize_datetime(self.departure_time),
            "arrival_time": serialize_datetime(self.arrival_time),
            "price": self.price,
            "notes": self.notes,
        }


@dataclass
class RestaurantPayload:
    kind: ClassVar[str] = "restaurant"

    name: str = ""
    address: str = ""
    cuisine: str = ""
    price_range: str = ""
    reservation_time: datetime | None = None
    time_label: str = ""
    preferred_dates: list[str] = field(default_factory=list)
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RestaurantPayload":
        invalid: list[str] = []
        raw_dates = data.get("preferred_dates") or []
        if not isinstance(raw_dates, list):
            invalid.append("preferred_dates")
            raw_dates = []
        payload = cls(
            name=_text(data.get("name")),
            address=_text(data.get("address")),
            cuisine=_text(data.get("cuisine")),
            price_range=_text(data.get("price_range")),
            reservation_time=_optional_instant(data, "reservation_time", invalid),
            time_label=_text(data.get("time_label")),
            preferred_dates=[_text(x) for x in raw_dates if _text(x)],
            notes=_text(data.get("notes")),
        )
        _raise_if_invalid(cls.kind, payload.missing_fields(), invalid)
        return payload

    def missing_fields(self) -> list[str]:
        return [] if self.name else ["name"]

    @property
    def display_name(self) -> str:
        return self.name

    def schedule_window(self) -> tuple[datetime | None, datetime | None, str]:
        return self.reservation_time, None, self.time_label

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "cuisine": self.cuisine,
            "price_range": self.price_range,
            "reservation_time": serialize_datetime(self.reservation_time),
            "time_label": self.time_label,
            "preferred_dates": list(self.preferred_dates),
            "notes": self.notes,
        }


@dataclass
class ActivityPayload:
    kind: ClassVar[str] = "activity"

    title: str = ""
    location: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    max_capacity: int | None = None
    attendee_ids: list[str] = field(default_factory=list)
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActivityPayload":
        invalid: list[str] = []
        capacity: int | None = None
        raw_capacity = data.get("max_capacity")
        if raw_capacity not in (None, ""):
            try:
                capacity = int(raw_capacity)
            except (TypeError, ValueError):
                invalid.append("max_capacity")
            else:
                if capacity < 1:
                    invalid.append("max_capacity")
                    capacity = None
        raw_attendees = data.get("attendee_ids") or []
        if not isinstance(raw_attendees, list):
            invalid.append("attendee_ids")
            raw_attendees = []
        attendees: list[str] = []
        for attendee in raw_attendees:
            attendee_id = _text(attendee)
            if attendee_id and attendee_id not in attendees:
                attendees.append(attendee_id)
        payload = cls(
            title=_text(data.get("title")),
            location=_text(data.get("location")),
            start_time=_optional_instant(data, "start_time", invalid),
            end_time=_optional_instant(data, "end_time", invalid),
            max_capacity=capacity,
            attendee_ids=attendees,
            notes=_text(data.get("notes")),
        )
        _raise_if_invalid(cls.kind, payload.missing_fields(), invalid)
        if payload.start_time and payload.end_time and payload.end_time <= payload.start_time:
            raise ValidationError("end_time must be later than start_time", fields=["end_time"])
        return payload

    def missing_fields(self) -> list[str]:
        return [] if self.title else ["title"]

    @property
    def display_name(self) -> str:
        return self.title

    def schedule_window(self) -> tuple[datetime | None, datetime | None, str]:
        return self.start_time, self.end_time, ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "location": self.location,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "max_capacity": self.max_capacity,
            "attendee_ids": list(self.attendee_ids),
            "notes": self.notes,
        }


ProposalPayload = HotelPayload | FlightPayload | RestaurantPayload | ActivityPayload

PAYLOAD_TYPES: dict[str, type] = {
    HotelPayload.kind: HotelPayload,
    FlightPayload.kind: FlightPayload,
    RestaurantPayload.kind: RestaurantPayload,
    ActivityPayload.kind: ActivityPayload,
}

# Field that must be present before a proposal can land on the calendar.
SCHEDULE_START_FIELDS = {
    "hotel": "check_in",
    "flight": "departure_time",
    "restaurant": "reservation_time",
    "activity": "start_time",
}


def _raise_if_invalid(kind: str, missing: list[str], invalid: list[str]) -> None:
    if missing:
        raise ValidationError(f"{kind} proposal is missing: {', '.join(missing)}", fields=missing)
    if invalid:
        raise ValidationError(f"{kind} proposal has invalid values for: {', '.join(invalid)}", fields=invalid)


def payload_from_dict(kind: str, data: dict[str, Any] | None) -> ProposalPayload:
    normalized_kind = _text(kind).lower()
    payload_type = PAYLOAD_TYPES.get(normalized_kind)
    if payload_type is None:
        raise ValidationError(f"unknown proposal kind: {kind!r}", fields=["kind"])
    if data is not None and not isinstance(data, dict):
        raise ValidationError("payload must be an object", fields=["payload"])
    return payload_type.from_dict(data or {})


@dataclass
class Proposal:
    id: str
    trip_id: str
    kind: str
    proposed_by: str
    payload: ProposalPayload
    status: str = PROPOSAL_ACTIVE
    voting_deadline: datetime | None = None
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    terminal_at: datetime | None = None
    terminal_by: str = ""
    schedule_entry_id: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == PROPOSAL_ACTIVE

    @property
    def display_name(self) -> str:
        return self.payload.display_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "kind": self.kind,
            "proposed_by": self.proposed_by,
            "status": self.status,
            "voting_deadline": serialize_datetime(self.voting_deadline),
            "version": self.version,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
            "terminal_at": serialize_datetime(self.terminal_at),
            "terminal_by": self.terminal_by,
            "schedule_entry_id": self.schedule_entry_id,
            "payload": self.payload.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Proposal":
        return cls(
            id=str(data["id"]),
            trip_id=str(data.get("trip_id", "")),
            kind=str(data.get("kind", "")),
            proposed_by=str(data.get("proposed_by", "")),
            payload=payload_from_dict(str(data.get("kind", "")), data.get("payload") or {}),
            status=str(data.get("status", PROPOSAL_ACTIVE)),
            voting_deadline=parse_instant(data.get("voting_deadline")),
            version=int(data.get("version", 1)),
            created_at=parse_instant(data.get("created_at")) or utc_now(),
            updated_at=parse_instant(data.get("updated_at")) or utc_now(),
            terminal_at=parse_instant(data.get("terminal_at")),
            terminal_by=str(data.get("terminal_by", "") or ""),
            schedule_entry_id=str(data.get("schedule_entry_id", "") or ""),
        )

    def clone(self) -> "Proposal":
        return copy.deepcopy(self)


@dataclass
class Rank:
    proposal_id: str
    voter_id: str
    rank_value: int
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "voter_id": self.voter_id,
            "rank_value": self.rank_value,
            "updated_at": serialize_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rank":
        return cls(
            proposal_id=str(data["proposal_id"]),
            voter_id=str(data["voter_id"]),
            rank_value=int(data["rank_value"]),
            updated_at=parse_instant(data.get("updated_at")) or utc_now(),
        )


@dataclass
class RankSet:
    proposal_id: str
    viewer_id: str
    ranks: list[Rank] = field(default_factory=list)
    cleared: list[Rank] = field(default_factory=list)

    @property
    def own(self) -> Rank | None:
        for rank in self.ranks:
            if rank.voter_id == self.viewer_id:
                return rank
        return None

    def to_dict(self) -> dict[str, Any]:
        own = self.own
        return {
            "proposal_id": self.proposal_id,
            "viewer_id": self.viewer_id,
            "current_user_rank": own.rank_value if own else None,
            "ranks": [rank.to_dict() for rank in self.ranks],
            "cleared": [rank.to_dict() for rank in self.cleared],
        }


@dataclass
class Invite:
    item_id: str
    item_kind: str
    user_id: str
    status: str = INVITE_PENDING
    responded_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    waitlisted_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "item_kind": self.item_kind,
            "user_id": self.user_id,
            "status": self.status,
            "responded_at": serialize_datetime(self.responded_at),
            "created_at": serialize_datetime(self.created_at),
            "waitlisted_at": serialize_datetime(self.waitlisted_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Invite":
        return cls(
            item_id=str(data["item_id"]),
            item_kind=str(data.get("item_kind", ITEM_KIND_ENTRY)),
            user_id=str(data["user_id"]),
            status=str(data.get("status", INVITE_PENDING)),
            responded_at=parse_instant(data.get("responded_at")),
            created_at=parse_instant(data.get("created_at")) or utc_now(),
            waitlisted_at=parse_instant(data.get("waitlisted_at")),
        )

    def with_updates(self, **kwargs: Any) -> "Invite":
        copied = copy.copy(self)
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class InviteUpdateResult:
    invite: Invite
    previous_status: str
    changed: bool
    waitlisted: bool = False
    promoted_user_ids: list[str] = field(default_factory=list)

    @property
    def promoted_user_id(self) -> str | None:
        return self.promoted_user_ids[0] if self.promoted_user_ids else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "invite": self.invite.to_dict(),
            "previous_status": self.previous_status,
            "changed": self.changed,
            "waitlisted": self.waitlisted,
            "promoted_user_ids": list(self.promoted_user_ids),
        }


@dataclass
class ScheduleEntry:
    id: str
    trip_id: str
    kind: str
    created_by: str
    title: str
    start: datetime | None = None
    end: datetime | None = None
    time_label: str = ""
    location: str = ""
    capacity: int | None = None
    status: str = ENTRY_CONFIRMED
    source_proposal_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    invites: list[Invite] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def display_name(self) -> str:
        return self.title

    def invite_for(self, user_id: str) -> Invite | None:
        for invite in self.invites:
            if invite.user_id == user_id:
                return invite
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "kind": self.kind,
            "created_by": self.created_by,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "time_label": self.time_label,
            "location": self.location,
            "capacity": self.capacity,
            "status": self.status,
            "source_proposal_id": self.source_proposal_id,
            "payload": copy.deepcopy(self.payload),
            "invites": [invite.to_dict() for invite in self.invites],
            "created_at": serialize_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleEntry":
        capacity = data.get("capacity")
        return cls(
            id=str(data["id"]),
            trip_id=str(data.get("trip_id", "")),
            kind=str(data.get("kind", "")),
            created_by=str(data.get("created_by", "")),
            title=str(data.get("title", "")),
            start=parse_instant(data.get("start")),
            end=parse_instant(data.get("end")),
            time_label=str(data.get("time_label", "") or ""),
            location=str(data.get("location", "") or ""),
            capacity=int(capacity) if capacity is not None else None,
            status=str(data.get("status", ENTRY_CONFIRMED)),
            source_proposal_id=str(data.get("source_proposal_id", "") or ""),
            payload=dict(data.get("payload") or {}),
            invites=[Invite.from_dict(item) for item in data.get("invites") or []],
            created_at=parse_instant(data.get("created_at")) or utc_now(),
        )


@dataclass
class ConflictAnnotation:
    item_id: str
    other_item_id: str
    name: str
    time_label: str
    start_minute: int
    end_minute: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
