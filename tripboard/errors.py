from __future__ import annotations

from typing import Iterable


STALE_MESSAGE = "This changed while you were looking at it. Please retry."


class TripboardError(Exception):
    code = "error"
    status_code = 400
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class ValidationError(TripboardError):
    code = "validation_error"
    status_code = 400
    user_message = "Please check the details and try again."

    def __init__(self, message: str = "", fields: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.fields = [str(field) for field in fields or []]


class DeadlineInPastError(ValidationError):
    code = "deadline_in_past"
    user_message = "The voting deadline must be in the future."


class MissingRequiredFieldError(ValidationError):
    code = "missing_required_field"
    user_message = "Some details are still missing before this can be scheduled."


class InvalidRankValueError(ValidationError):
    code = "invalid_rank_value"
    user_message = "That vote value is not allowed here."


class InvalidTransitionError(ValidationError):
    code = "invalid_transition"
    user_message = "That response is not available right now."


class PermissionDeniedError(TripboardError):
    code = "permission_denied"
    status_code = 403
    user_message = "Only the person who created this can do that."


class NotFoundError(TripboardError):
    code = "not_found"
    status_code = 404
    user_message = "This may have already been removed."


class ItemNotFoundError(NotFoundError):
    code = "item_not_found"


class NotInvitedError(TripboardError):
    code = "not_invited"
    status_code = 403
    user_message = "You are not on the invite list for this item."


class AlreadyTerminalError(TripboardError):
    code = "already_terminal"
    status_code = 409
    user_message = "This proposal has already been scheduled or canceled."


class ProposalNotActiveError(TripboardError):
    code = "proposal_not_active"
    status_code = 409
    user_message = "Voting is closed for this proposal."


class ConflictError(TripboardError):
    code = "conflict"
    status_code = 409
    user_message = "Someone else changed this at the same time."


class ItemNoLongerOpenError(TripboardError):
    code = "item_no_longer_open"
    status_code = 410
    user_message = "This item is no longer accepting responses."


STALE_ERRORS = (AlreadyTerminalError, ProposalNotActiveError, ConflictError, NotFoundError)


def is_stale_error(exc: BaseException) -> bool:
    return isinstance(exc, STALE_ERRORS)


def describe_error(exc: BaseException) -> str:
    if is_stale_error(exc):
        return STALE_MESSAGE
    if isinstance(exc, TripboardError):
        return exc.message
    return TripboardError.user_message
