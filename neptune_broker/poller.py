"""Availability polling for provisioned instances."""

from __future__ import annotations

from injector import inject
from loguru import logger

from neptune_broker.constants import NeptuneStatus
from neptune_broker.exceptions import UpstreamError
from neptune_broker.lifecycle import ResourceLifecycleClient
from neptune_broker.types import Status

log = logger.bind(component="poller")


class AvailabilityPoller:
    """Maps the cloud's view of an instance onto READY, PENDING or UNKNOWN.

    An instance is READY only when its status is ``available`` and it
    reports an endpoint. Lookup failures and missing instances are
    UNKNOWN, never errors, so one bad instance cannot stall a cycle.
    """

    @inject
    def __init__(self, lifecycle: ResourceLifecycleClient) -> None:
        self._lifecycle = lifecycle

    async def status(self, name: str) -> Status:
        try:
            description = await self._lifecycle.describe_instance(name)
        except UpstreamError as e:
            log.bind(name=name).warning("Status lookup failed: {}", e)
            return Status.unknown(str(e))

        if description is None:
            return Status.unknown("instance not found")

        log.bind(name=name).debug("Status: {}", description.status)
        if description.status == NeptuneStatus.AVAILABLE and description.endpoint:
            return Status.ready(description.endpoint)
        return Status.pending(description.status)


__all__ = ["AvailabilityPoller"]
