"""Error taxonomy for assistant governance.

Every error carries a plain-language ``user_message`` that is safe to show in
the dashboard. The exception's own ``str()`` may hold internal detail and is
only ever logged.
"""
from __future__ import annotations


class GovernanceError(Exception):
    """Base class for governance-engine failures."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = "", user_message: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        if user_message:
            self.user_message = user_message


class BudgetExhausted(GovernanceError):
    """Admission control denied a new assistant turn."""

    user_message = (
        "This conversation has used its analysis budget. "
        "Clear the conversation to start a fresh session."
    )

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InferenceError(GovernanceError):
    """The inference collaborator failed; nothing durable was changed."""

    retryable = True


class TransportFailure(InferenceError):
    user_message = "The assistant could not be reached. Please try again in a moment."


class AuthFailure(InferenceError):
    user_message = "The assistant is not available right now. Please contact your administrator."
    retryable = False


class RateLimited(InferenceError):
    user_message = "The assistant is busy right now. Please wait a few seconds and try again."


class MalformedResponse(InferenceError):
    user_message = "The assistant returned an unexpected response. Please try again."


class InvestigationCancelled(GovernanceError):
    user_message = "The investigation was stopped."


class InvalidStateTransition(GovernanceError):
    """A state change was requested that the current state does not allow."""

    user_message = "This item has already been handled. Refresh to see its current state."


class KnowledgeStorageError(GovernanceError):
    user_message = "The knowledge base could not be updated. No changes were made."


def status_code_for(exc: GovernanceError) -> int:
    """HTTP status the API answers with for a governance error."""
    if isinstance(exc, BudgetExhausted):
        return 429
    if isinstance(exc, (RateLimited, AuthFailure)):
        return 503
    if isinstance(exc, InferenceError):
        return 502
    if isinstance(exc, (InvestigationCancelled, InvalidStateTransition)):
        return 409
    if isinstance(exc, KnowledgeStorageError):
        return 503
    return 500
