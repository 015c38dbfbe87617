"""Error taxonomy shared by vendor clients, step adapters and the orchestrator."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

import requests

from extraction_worker.core.config import ConfigError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_INPUT = "invalid_input"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.QUOTA_EXCEEDED)


class StepError(RuntimeError):
    """Raised by step adapters (and vendor clients) with a classified kind."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


class EntityNotFoundError(LookupError):
    """Raised when the store has no record for an entity id."""


class StaleVersionError(RuntimeError):
    """Raised when a merge is attempted against an outdated record version."""

    def __init__(self, entity_id: str, expected: int, actual: Optional[int]) -> None:
        super().__init__(f"entity {entity_id} is at version {actual}, expected {expected}")
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(ValueError):
    """Raised when a step status would move backwards."""


def kind_for_status_code(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.QUOTA_EXCEEDED
    if status_code in (401, 403):
        return ErrorKind.FATAL
    if status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.INVALID_INPUT


def classify_exception(exc: BaseException) -> StepError:
    """Map an arbitrary exception raised inside an adapter to a StepError."""
    if isinstance(exc, StepError):
        return exc
    if isinstance(exc, ConfigError):
        return StepError(ErrorKind.FATAL, str(exc))
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, TimeoutError)):
        return StepError(ErrorKind.TRANSIENT, str(exc) or exc.__class__.__name__)
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        status_code = response.status_code if response is not None else 500
        return StepError(kind_for_status_code(status_code), str(exc))
    logger.debug("Unclassified adapter exception %r treated as invalid input", exc)
    return StepError(ErrorKind.INVALID_INPUT, f"{exc.__class__.__name__}: {exc}")
