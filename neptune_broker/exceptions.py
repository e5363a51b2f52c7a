"""Custom exception hierarchy for the broker.

All broker exceptions inherit from BrokerError, so the routing layer can
map the whole family to responses with a single except clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from neptune_broker.constants import RETRY_AFTER

if TYPE_CHECKING:
    from botocore.exceptions import ClientError

    from neptune_broker.types import StepResult


class BrokerError(Exception):
    """Base exception for all broker errors."""


class ConfigurationError(BrokerError):
    """Raised for invalid configuration or missing required settings."""


class ValidationError(BrokerError):
    """Raised when a request is rejected before any external call."""


class PoolExhaustedError(BrokerError):
    """Raised when no Available instance exists for a plan."""

    def __init__(self, plan: str, retry_after: int = RETRY_AFTER) -> None:
        self.plan = plan
        self.retry_after = retry_after
        super().__init__(
            f"No available {plan} instances. Try again in {retry_after // 60} minutes"
        )


class NotFoundError(BrokerError):
    """Raised when an operation references an unknown instance name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Instance {name} does not exist")


class NotReadyError(BrokerError):
    """Raised when a record exists but has no endpoint or credential yet."""

    def __init__(self, name: str, reason: str = "endpoint not available") -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Instance {name} is not ready ({reason}), try again in a few minutes")


class DuplicateNameError(BrokerError):
    """Raised when an insert hits the unique constraint on ``name``."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Instance name {name} already exists")


class StoreError(BrokerError):
    """Raised when the pool database rejects or cannot run an operation."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        super().__init__(f"Store {operation} failed: {detail}")


class UpstreamError(BrokerError):
    """Raised when the Neptune or IAM API returns a failure."""

    def __init__(self, service: str, operation: str, code: str, message: str = "") -> None:
        self.service = service
        self.operation = operation
        self.code = code
        detail = f": {message}" if message else ""
        super().__init__(f"{service} {operation} failed with {code}{detail}")

    @classmethod
    def from_client_error(cls, service: str, operation: str, exc: ClientError) -> UpstreamError:
        """Build from a botocore error, keeping the code and dropping ARNs."""
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = _redact(error.get("Message", ""))
        return cls(service, operation, code, message)


class PartialFailureError(BrokerError):
    """A multi-step operation did its primary effect but a later step failed."""

    def __init__(self, operation: str, name: str, failures: tuple[StepResult, ...]) -> None:
        self.operation = operation
        self.name = name
        self.failures = failures
        steps = ", ".join(f.step for f in failures)
        super().__init__(f"{operation} of {name} partially failed at: {steps}")


def error_code(exc: BaseException) -> str:
    """Return the AWS error code of a ClientError or UpstreamError, else ''."""
    if isinstance(exc, UpstreamError):
        return exc.code
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code", "")
    return ""


def _redact(message: str) -> str:
    words = message.split()
    return " ".join("<arn>" if w.strip("'\".,").startswith("arn:") else w for w in words)
