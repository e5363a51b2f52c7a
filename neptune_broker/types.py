"""Domain types for the pooled-instance broker.

Immutable value objects shared by the store, the coordinators and the
cloud adapters. Nothing here performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto

from neptune_broker.constants import ClaimedFlag
from neptune_broker.exceptions import PartialFailureError


class InstanceState(Enum):
    """Lifecycle of a pool record. Terminal state is removal."""

    PROVISIONING = auto()
    AVAILABLE = auto()
    CLAIMED = auto()
    DELETING = auto()


# =============================================================================
# Credentials
# =============================================================================


@dataclass(frozen=True, slots=True)
class Credential:
    """Access key pair scoped by policy to one instance's cluster."""

    access_key_id: str
    secret_access_key: str

    def __repr__(self) -> str:
        return f"Credential(access_key_id={self.access_key_id!r}, secret_access_key='***')"

    @property
    def is_set(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


EMPTY_CREDENTIAL = Credential(access_key_id="", secret_access_key="")


@dataclass(frozen=True, slots=True)
class IssuedCredential:
    """Everything the issuer created for one instance."""

    identity: str
    identity_arn: str
    policy_arn: str
    credential: Credential


# =============================================================================
# Pool Record
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """One row of the ``provision`` table.

    ``state`` is derived from the stored columns rather than stored, so the
    invariants between state, endpoint and credential cannot drift apart.
    """

    name: str
    plan: str
    claimed: ClaimedFlag
    created_at: datetime
    billing_code: str = ""
    endpoint: str = ""
    credential: Credential = EMPTY_CREDENTIAL

    @property
    def state(self) -> InstanceState:
        match self.claimed:
            case ClaimedFlag.DELETING:
                return InstanceState.DELETING
            case ClaimedFlag.YES:
                return InstanceState.CLAIMED
            case _ if self.endpoint and self.credential.is_set:
                return InstanceState.AVAILABLE
            case _:
                return InstanceState.PROVISIONING

    @property
    def needs_credential(self) -> bool:
        """Provisioning sub-state: the cloud resource exists but issuance failed."""
        return self.claimed == ClaimedFlag.NO and not self.credential.is_set

    @property
    def is_ready(self) -> bool:
        return bool(self.endpoint) and self.credential.is_set


# =============================================================================
# Cloud Handles
# =============================================================================


@dataclass(frozen=True, slots=True)
class ClusterHandle:
    """A Neptune DB cluster as returned by CreateDBCluster."""

    identifier: str
    resource_id: str
    arn: str


@dataclass(frozen=True, slots=True)
class InstanceHandle:
    """A Neptune DB instance as returned by CreateDBInstance."""

    identifier: str
    arn: str


@dataclass(frozen=True, slots=True)
class InstanceDescription:
    """Status and endpoint of a DB instance."""

    identifier: str
    status: str
    endpoint: str = ""


# =============================================================================
# Availability
# =============================================================================


class Readiness(Enum):
    PENDING = auto()
    READY = auto()
    UNKNOWN = auto()


@dataclass(frozen=True, slots=True)
class Status:
    """Result of an availability poll. ``endpoint`` is set only when READY."""

    readiness: Readiness
    endpoint: str = ""
    detail: str = ""

    @classmethod
    def pending(cls, detail: str = "") -> Status:
        return cls(Readiness.PENDING, detail=detail)

    @classmethod
    def ready(cls, endpoint: str) -> Status:
        return cls(Readiness.READY, endpoint=endpoint)

    @classmethod
    def unknown(cls, detail: str = "") -> Status:
        return cls(Readiness.UNKNOWN, detail=detail)

    @property
    def is_ready(self) -> bool:
        return self.readiness is Readiness.READY


# =============================================================================
# Operation Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one step of a multi-step operation."""

    step: str
    ok: bool
    error: str = ""


@dataclass(frozen=True, slots=True)
class Lease:
    """Connection details handed to a claimant or returned by lookup.

    ``partial`` is set when the claim committed but a follow-up step
    (tagging) failed.
    """

    name: str
    endpoint: str
    credential: Credential
    region: str
    partial: PartialFailureError | None = None

    def to_dict(self) -> dict[str, str]:
        """Serialize with the connection keys consumers expect."""
        return {
            "NEPTUNE_DATABASE_URL": self.endpoint,
            "NEPTUNE_ACCESS_KEY": self.credential.access_key_id,
            "NEPTUNE_SECRET_KEY": self.credential.secret_access_key,
            "NEPTUNE_REGION": self.region,
        }


@dataclass(frozen=True, slots=True)
class TeardownReport:
    """Per-step status of a teardown.

    ``record_removed`` is False when the record was kept in Deleting so the
    sweep can retry the cloud deletion.
    """

    name: str
    steps: tuple[StepResult, ...]
    record_removed: bool

    @property
    def failures(self) -> tuple[StepResult, ...]:
        return tuple(s for s in self.steps if not s.ok)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def partial(self) -> PartialFailureError | None:
        failures = self.failures
        if not failures:
            return None
        return PartialFailureError("delete", self.name, failures)
