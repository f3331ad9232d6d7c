"""Custom exception hierarchy for the ballot API."""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base application error with a stable machine-readable code."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: list[str] | None = None,
        retryable: bool = False,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or []
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error in the API standard shape."""
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = list(self.details)
        if self.retryable:
            payload["retryable"] = True
        return payload


class NotFoundError(AppError):
    """Raised when a requested resource does not exist."""

    def __init__(self, resource: str) -> None:
        super().__init__(message=f"{resource} not found", code="NOT_FOUND", status_code=404)


class ForbiddenError(AppError):
    """Raised when the user lacks permission for the action."""

    def __init__(self, reason: str = "You don't have permission", code: str = "FORBIDDEN") -> None:
        super().__init__(message=reason, code=code, status_code=403)


class ConflictError(AppError):
    """Raised on duplicate/conflicting operations."""

    def __init__(self, reason: str, code: str = "CONFLICT") -> None:
        super().__init__(message=reason, code=code, status_code=409)


class UnauthorizedError(AppError):
    """Raised when the caller is not authenticated."""

    def __init__(self, reason: str = "Unauthorized") -> None:
        super().__init__(message=reason, code="UNAUTHORIZED", status_code=401)


class InvalidInputError(AppError):
    """Raised for request payload or parameter validation issues."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=reason, code="INVALID_INPUT", status_code=422)


class ServiceUnavailableError(AppError):
    """Raised when the database cannot be reached; safe for the client to retry."""

    def __init__(self, reason: str = "Database is temporarily unavailable") -> None:
        super().__init__(
            message=reason,
            code="DATABASE_UNAVAILABLE",
            status_code=503,
            retryable=True,
        )


class VoterIneligibleError(ForbiddenError):
    """Raised when a voter fails an eligibility rule on a command path."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason=reason, code="VOTER_INELIGIBLE")


class ParticipationRequiredError(ForbiddenError):
    """Raised when a ballot is requested without confirmed participation."""

    def __init__(self) -> None:
        super().__init__(
            reason="You must confirm your participation in this election before voting",
            code="PARTICIPATION_REQUIRED",
        )


class ElectionNotOpenForParticipationError(AppError):
    """Raised when participation is confirmed after the election has closed."""

    def __init__(self, reason: str = "Election is not available for participation") -> None:
        super().__init__(
            message=reason,
            code="ELECTION_NOT_OPEN_FOR_PARTICIPATION",
            status_code=400,
        )


class BallotNotYetOpenError(AppError):
    """Raised when a ballot is requested before its window opens."""

    def __init__(self, reason: str = "Voting has not started yet") -> None:
        super().__init__(message=reason, code="BALLOT_NOT_YET_OPEN", status_code=403)


class BallotWindowClosedError(AppError):
    """Raised when the voting window has closed or the ballot has expired."""

    def __init__(self, reason: str = "Voting is closed") -> None:
        super().__init__(message=reason, code="BALLOT_WINDOW_CLOSED", status_code=410)


class AlreadySubmittedError(ConflictError):
    """Raised when a submitted ballot is submitted again."""

    def __init__(self) -> None:
        super().__init__("Ballot has already been submitted", code="ALREADY_SUBMITTED")


class VoteValidationError(AppError):
    """Raised when a submitted vote set breaks position rules."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__(
            message="Submitted votes are invalid",
            code="INVALID_VOTES",
            status_code=422,
            details=problems,
        )


class BallotIssueConflictError(AppError):
    """Raised when concurrent ballot issuance kept colliding after retries."""

    def __init__(self) -> None:
        super().__init__(
            message="Another request is starting this ballot, please try again",
            code="BALLOT_ISSUE_CONFLICT",
            status_code=503,
            retryable=True,
        )
