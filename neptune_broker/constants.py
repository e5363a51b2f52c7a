"""Centralized constants and enums for the broker.

All magic strings shared between the store, the Neptune adapter and the
IAM adapter live here so the three systems agree on them.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class BrokerTag(StrEnum):
    """AWS resource tag keys written by the broker."""

    MANAGED = "neptune-broker:managed"
    PLAN = "neptune-broker:plan"
    NAME = "Name"
    BILLING_CODE = "billingcode"


# =============================================================================
# Pool Record States
# =============================================================================


class ClaimedFlag(StrEnum):
    """Values of the ``claimed`` column of the ``provision`` table."""

    NO = "no"
    YES = "yes"
    DELETING = "deleting"


class NeptuneStatus(StrEnum):
    """DB instance status names reported by DescribeDBInstances."""

    AVAILABLE = "available"
    CREATING = "creating"
    DELETING = "deleting"
    FAILED = "failed"


# =============================================================================
# Store
# =============================================================================

TABLE_NAME: Final = "provision"
COLUMN_LENGTH: Final = 200
PREPROVISIONED_BILLING_CODE: Final = "preprovisioned"
CLAIM_ATTEMPTS: Final = 5

# =============================================================================
# Cloud
# =============================================================================

ENGINE: Final = "neptune"
IAM_PATH: Final = "/neptune-broker/"
POLICY_SUFFIX: Final = "policy"
POLICY_VERSION: Final = "2012-10-17"
NEPTUNE_DB_ACTION: Final = "neptune-db:*"

# Error codes that mean the resource is already gone.
GONE_CODES: Final = frozenset({
    "DBInstanceNotFound",
    "DBInstanceNotFoundFault",
    "DBClusterNotFound",
    "DBClusterNotFoundFault",
    "NoSuchEntity",
})

THROTTLE_CODES: Final = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
})

# =============================================================================
# Timing (in seconds)
# =============================================================================

DEFAULT_INTERVAL: Final = 60
RETRY_AFTER: Final = 600
