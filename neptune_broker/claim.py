"""Claiming, lookup and tagging of pooled instances."""

from __future__ import annotations

from injector import inject
from loguru import logger

from neptune_broker.config import BrokerConfig
from neptune_broker.constants import CLAIM_ATTEMPTS, BrokerTag
from neptune_broker.exceptions import (
    NotFoundError,
    NotReadyError,
    PartialFailureError,
    PoolExhaustedError,
    UpstreamError,
    ValidationError,
)
from neptune_broker.lifecycle import ResourceLifecycleClient
from neptune_broker.store import PoolStore
from neptune_broker.types import InstanceRecord, InstanceState, Lease, StepResult

log = logger.bind(component="claim")


class ClaimCoordinator:
    """Hands Available instances to claimants, oldest first.

    The store performs selection and transition as one conditional write,
    so a record is claimed at most once however many claims race for it.
    A claim that loses a race retries while Available records remain.
    """

    @inject
    def __init__(
        self,
        config: BrokerConfig,
        store: PoolStore,
        lifecycle: ResourceLifecycleClient,
    ) -> None:
        self._config = config
        self._store = store
        self._lifecycle = lifecycle

    async def claim(self, plan: str, billing_code: str) -> Lease:
        """Claim the oldest Available instance of ``plan``.

        Tagging happens after the claim commits. If it fails the lease is
        still returned, with ``partial`` describing the missing tags.

        Raises:
            ValidationError: Unknown plan or empty billing code.
            PoolExhaustedError: No Available instance of ``plan``.
        """
        if self._config.plan(plan) is None:
            raise ValidationError(f"Unknown plan '{plan}'")
        if not billing_code.strip():
            raise ValidationError("Billing code must not be empty")

        record = await self._claim_oldest(plan, billing_code)
        bound = log.bind(name=record.name, plan=plan)
        bound.info("Claimed instance")

        failures = await self._tag_resources(record.name, BrokerTag.BILLING_CODE, billing_code)
        partial = None
        if failures:
            partial = PartialFailureError("claim", record.name, failures)
            bound.warning("Claim succeeded but tagging failed: {}", partial)

        return Lease(
            name=record.name,
            endpoint=record.endpoint,
            credential=record.credential,
            region=self._config.region,
            partial=partial,
        )

    async def _claim_oldest(self, plan: str, billing_code: str) -> InstanceRecord:
        for attempt in range(1, CLAIM_ATTEMPTS + 1):
            record = await self._store.claim_oldest(plan, billing_code)
            if record is not None:
                return record
            if not await self._store.has_available(plan):
                break
            log.bind(plan=plan).debug("Lost claim race (attempt {}), retrying", attempt)
        raise PoolExhaustedError(plan)

    async def _tag_resources(self, name: str, key: str, value: str) -> tuple[StepResult, ...]:
        results = []
        for step, arn_of in (
            ("tag_cluster", self._lifecycle.cluster_arn),
            ("tag_instance", self._lifecycle.instance_arn),
        ):
            try:
                await self._lifecycle.tag_resource(await arn_of(name), key, value)
            except UpstreamError as e:
                results.append(StepResult(step, ok=False, error=str(e)))
        return tuple(results)

    async def lookup(self, name: str) -> Lease:
        """Connection details of ``name``.

        Raises:
            NotFoundError: No such record, or it is being deleted.
            NotReadyError: The record has no endpoint or credential yet.
        """
        record = await self._store.get(name)
        if record is None or record.state is InstanceState.DELETING:
            raise NotFoundError(name)
        if not record.endpoint:
            raise NotReadyError(name)
        if not record.credential.is_set:
            raise NotReadyError(name, reason="credential not issued")
        return Lease(
            name=record.name,
            endpoint=record.endpoint,
            credential=record.credential,
            region=self._config.region,
        )

    async def tag(self, name: str, key: str, value: str) -> None:
        """Tag the cluster and instance of ``name``.

        Raises:
            ValidationError: Empty tag key or value.
            NotFoundError: No such record, or it is being deleted. No cloud
                call is made.
            UpstreamError: The tagging request failed.
        """
        if not key:
            raise ValidationError("Tag key must not be empty")
        if not value:
            raise ValidationError("Tag value must not be empty")
        record = await self._store.get(name)
        if record is None or record.state is InstanceState.DELETING:
            raise NotFoundError(name)

        await self._lifecycle.tag_resource(await self._lifecycle.cluster_arn(name), key, value)
        await self._lifecycle.tag_resource(await self._lifecycle.instance_arn(name), key, value)
        log.bind(name=name).info("Tagged {}={}", key, value)


__all__ = ["ClaimCoordinator"]
