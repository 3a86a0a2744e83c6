"""Core runtime error types.

The runtime is fail-closed: it rejects requests when it cannot prove a job is
funded, unique and well-formed. Every error carries a stable `code` (the class
name) which is recorded on failed jobs and mapped to HTTP responses in the API
layer.

Admission errors are raised synchronously and leave no state behind.
Execution errors terminate a job in `failed` and are never raised out of the
lifecycle engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class DvmError(Exception):
    """Base class for runtime errors."""

    code = "DvmError"

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.code = cls.__name__


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class ConfigError(DvmError):
    pass


class NotFoundError(DvmError):
    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class InvalidTransition(DvmError):
    pass


class StorageFault(DvmError):
    """The durable store is unreachable or failed mid-operation. Callers should retry."""


# Admission-time errors.


class AdmissionError(DvmError):
    pass


class MalformedRequest(AdmissionError):
    def __init__(self, message: str, violations: Iterable[SchemaViolation] = ()):
        self.violations = list(violations)
        super().__init__(message)


class DuplicateJob(AdmissionError):
    pass


class InsufficientFunds(AdmissionError):
    def __init__(self, message: str, *, required_msats: int | None = None):
        self.required_msats = required_msats
        super().__init__(message)


class DuplicatePayment(AdmissionError):
    pass


class InvalidSchedule(AdmissionError):
    pass


class DuplicateEventName(AdmissionError):
    pass


class UnknownEvent(AdmissionError):
    pass


# Oracle attestation errors.


class AlreadyAttested(DvmError):
    pass


class InvalidOutcome(DvmError):
    pass


# Execution-time errors.


class ExecutionError(DvmError):
    pass


class IntegrityMismatch(ExecutionError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"artifact checksum mismatch: expected {expected}, got {actual}")


class ExecutionTimeout(ExecutionError):
    def __init__(self, time_budget_ms: int):
        self.time_budget_ms = time_budget_ms
        super().__init__(f"execution exceeded time budget of {time_budget_ms}ms")


class ExecutionFault(ExecutionError):
    pass
