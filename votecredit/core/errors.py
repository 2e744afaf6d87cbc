import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for every error that may leave the ledger core."""

    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            payload["context"] = self.details
        return payload


# --- Ledger / payments ---


class DuplicateTransaction(LedgerError):
    status_code = 409
    code = "duplicate_transaction"


class AlreadySettled(LedgerError):
    status_code = 409
    code = "already_settled"


class UnknownTransaction(LedgerError):
    status_code = 404
    code = "unknown_transaction"


class TransactionNotClaimable(LedgerError):
    status_code = 409
    code = "transaction_not_claimable"


class UnknownAccount(LedgerError):
    status_code = 404
    code = "unknown_account"


class DuplicateAccount(LedgerError):
    status_code = 409
    code = "duplicate_account"


class InvalidNotification(LedgerError):
    status_code = 400
    code = "invalid_notification"


class InsufficientCredit(LedgerError):
    status_code = 402
    code = "insufficient_credit"


class ReleaseRefused(LedgerError):
    status_code = 409
    code = "release_refused"


# --- Elections / votes ---


class UnknownElection(LedgerError):
    status_code = 404
    code = "unknown_election"


class ElectionStateConflict(LedgerError):
    status_code = 409
    code = "election_state_conflict"


class DuplicateVoter(LedgerError):
    status_code = 409
    code = "duplicate_voter"


class VoteError(LedgerError):
    """Expected rejection of a ballot; reported to the voter, never logged as an error."""

    code = "vote_error"


class DuplicateVote(VoteError):
    status_code = 409
    code = "duplicate_vote"


class NotAuthorized(VoteError):
    status_code = 403
    code = "not_authorized"


class ElectionNotOpen(VoteError):
    status_code = 409
    code = "election_not_open"


class InvalidCandidate(VoteError):
    status_code = 422
    code = "invalid_candidate"


# --- Storage / reconciliation ---


class Busy(LedgerError):
    status_code = 503
    code = "busy"


class ReconciliationMismatch(LedgerError):
    status_code = 409
    code = "reconciliation_mismatch"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:  # type: ignore[override]
        payload = exc.to_payload()
        payload["path"] = str(request.url)
        headers: Optional[Dict[str, str]] = None
        if isinstance(exc, Busy):
            headers = {"Retry-After": "1"}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation failed.",
                "errors": jsonable_errors(exc),
                "path": str(request.url),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail or "HTTP error.", "path": str(request.url)}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error.",
                "path": str(request.url),
            },
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    errors = []
    for error in exc.errors():
        cleaned = {key: value for key, value in error.items() if key != "ctx"}
        errors.append(cleaned)
    return errors
