"""Shared error codes, user-facing messages and adapter exceptions."""

from __future__ import annotations

from models import Severity

INITIALIZATION_FAILED = "INITIALIZATION_FAILED"
INGESTION_REJECTED = "INGESTION_REJECTED"
RATE_LIMIT_DEFERRED = "RATE_LIMIT_DEFERRED"
RATE_LIMIT_EXHAUSTED = "RATE_LIMIT_EXHAUSTED"
SUMMARIZATION_FAILED = "SUMMARIZATION_FAILED"
STOP_TIMEOUT = "STOP_TIMEOUT"
PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
STOP_FAILED = "STOP_FAILED"

AUTH_FAILED = "AUTH_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
PROVIDER_PROTOCOL_ERROR = "PROVIDER_PROTOCOL_ERROR"

ERROR_MESSAGES = {
    INITIALIZATION_FAILED: "Speech recognition could not be started.",
    INGESTION_REJECTED: "Segment dropped because the session is not listening.",
    RATE_LIMIT_DEFERRED: "Summarization is waiting for a free request slot.",
    RATE_LIMIT_EXHAUSTED: "Monthly summarization budget is used up.",
    SUMMARIZATION_FAILED: "A summary update could not be generated.",
    STOP_TIMEOUT: "Speech recognition did not stop cleanly.",
    PERSISTENCE_FAILED: "Session could not be saved, export it manually.",
    STOP_FAILED: "Session could not be closed cleanly.",
    AUTH_FAILED: "API key is invalid.",
    NETWORK_ERROR: "Network failed, please retry.",
    PROVIDER_PROTOCOL_ERROR: "Provider response format is invalid.",
}

SEVERITIES = {
    INITIALIZATION_FAILED: Severity.ERROR,
    INGESTION_REJECTED: Severity.INFO,
    RATE_LIMIT_DEFERRED: Severity.INFO,
    RATE_LIMIT_EXHAUSTED: Severity.ERROR,
    SUMMARIZATION_FAILED: Severity.WARNING,
    STOP_TIMEOUT: Severity.WARNING,
    PERSISTENCE_FAILED: Severity.ERROR,
    STOP_FAILED: Severity.ERROR,
}


def severity_for(code: str) -> Severity:
    return SEVERITIES.get(code, Severity.WARNING)


class TalknotesError(Exception):
    code = PROVIDER_PROTOCOL_ERROR

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or ERROR_MESSAGES.get(code or self.code, ""))
        if code:
            self.code = code


class SpeechSourceError(TalknotesError):
    code = INITIALIZATION_FAILED


class SummarizationCallFailure(TalknotesError):
    code = SUMMARIZATION_FAILED

    def __init__(self, message: str = "", code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message, code)
        self.retryable = retryable


class PersistenceFailure(TalknotesError):
    code = PERSISTENCE_FAILED


def map_provider_exception(exc: Exception) -> SummarizationCallFailure:
    """Map an SDK/network exception to a standard call failure."""
    if isinstance(exc, SummarizationCallFailure):
        return exc
    message = str(exc)
    low = message.lower()
    if "401" in low or "auth" in low or "api key" in low:
        return SummarizationCallFailure(message, AUTH_FAILED, retryable=False)
    if "timeout" in low or "network" in low or "connection" in low:
        return SummarizationCallFailure(message, NETWORK_ERROR, retryable=True)
    return SummarizationCallFailure(message, PROVIDER_PROTOCOL_ERROR, retryable=True)
