"""Neptune broker - hand out preprovisioned Neptune instances instantly.

Example:

    from neptune_broker import Broker, load_config

    async with Broker.create(load_config()) as broker:
        await broker.run_cycle()                       # top up the pools
        lease = await broker.claim("small", "cust-1")  # oldest available
        await broker.delete(lease.name)
"""

from neptune_broker.broker import Broker
from neptune_broker.config import BrokerConfig, PlanConfig, load_config
from neptune_broker.exceptions import (
    BrokerError,
    ConfigurationError,
    DuplicateNameError,
    NotFoundError,
    NotReadyError,
    PartialFailureError,
    PoolExhaustedError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from neptune_broker.logging import LogConfig, setup_logging, teardown_logging
from neptune_broker.types import (
    Credential,
    InstanceRecord,
    InstanceState,
    Lease,
    Status,
    StepResult,
    TeardownReport,
)

__version__ = "0.1.0"

__all__ = [
    "Broker",
    "BrokerConfig",
    "BrokerError",
    "ConfigurationError",
    "Credential",
    "DuplicateNameError",
    "InstanceRecord",
    "InstanceState",
    "Lease",
    "LogConfig",
    "NotFoundError",
    "NotReadyError",
    "PartialFailureError",
    "PlanConfig",
    "PoolExhaustedError",
    "Status",
    "StepResult",
    "StoreError",
    "TeardownReport",
    "UpstreamError",
    "ValidationError",
    "load_config",
    "setup_logging",
    "teardown_logging",
]
