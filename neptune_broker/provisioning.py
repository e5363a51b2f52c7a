"""Preprovisioning: keeps each plan's pool topped up ahead of demand.

``ensure_minimum`` creates at most one instance per call and relies on
being called every cycle to converge on the plan's minimum. The
reconciliation passes then move records from Provisioning to Available
as their credential and endpoint arrive.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from uuid import uuid4

from injector import inject
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from neptune_broker.config import BrokerConfig, PlanConfig
from neptune_broker.constants import PREPROVISIONED_BILLING_CODE
from neptune_broker.credentials import CredentialIssuer
from neptune_broker.exceptions import BrokerError, UpstreamError, ValidationError
from neptune_broker.lifecycle import ResourceLifecycleClient
from neptune_broker.poller import AvailabilityPoller
from neptune_broker.store import PoolStore
from neptune_broker.teardown import TeardownCoordinator
from neptune_broker.types import EMPTY_CREDENTIAL, Credential, InstanceRecord

log = logger.bind(component="provisioning")

_NAME_ATTEMPTS = 5


class ProvisioningEngine:
    """Creates pooled instances and reconciles them towards Available."""

    @inject
    def __init__(
        self,
        config: BrokerConfig,
        store: PoolStore,
        lifecycle: ResourceLifecycleClient,
        issuer: CredentialIssuer,
        poller: AvailabilityPoller,
        teardown: TeardownCoordinator,
    ) -> None:
        self._config = config
        self._store = store
        self._lifecycle = lifecycle
        self._issuer = issuer
        self._poller = poller
        self._teardown = teardown

    # -------------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------------

    async def ensure_minimum(self, plan: str, minimum: int) -> InstanceRecord | None:
        """Create one instance of ``plan`` if fewer than ``minimum`` are unclaimed.

        Returns the new Provisioning record, or None when the pool is
        already large enough.

        Raises:
            ValidationError: ``plan`` is not in the catalog.
            UpstreamError: Cluster or instance creation failed. Nothing
                was recorded and no credential was issued.
            StoreError: The record could not be written. The instance and
                cluster were rolled back.
            DuplicateNameError: Another provisioner recorded the same name.
                Rolled back the same way.
        """
        plan_config = self._config.plan(plan)
        if plan_config is None:
            raise ValidationError(f"Unknown plan '{plan}'")

        unclaimed = await self._store.count_unclaimed(plan)
        bound = log.bind(plan=plan)
        bound.info("Need {} unclaimed instances, currently have {}", minimum, unclaimed)
        if unclaimed >= minimum:
            return None

        return await self._provision(plan_config)

    async def _provision(self, plan: PlanConfig) -> InstanceRecord:
        name = await self._new_name()
        bound = log.bind(name=name, plan=plan.name)

        cluster = await self._lifecycle.create_cluster(name, plan)
        try:
            await self._lifecycle.create_instance(name, plan)
        except UpstreamError:
            bound.warning("Instance creation failed, rolling back cluster")
            await self._rollback_cluster(name)
            raise

        # The record must exist before the identity does, or a concurrent
        # sweep sees an identity with no record and revokes it.
        try:
            record = await self._store.insert(
                name,
                plan.name,
                EMPTY_CREDENTIAL,
                billing_code=PREPROVISIONED_BILLING_CODE,
            )
        except BrokerError:
            bound.warning("Recording instance failed, rolling back instance and cluster")
            await self._rollback_instance(name)
            await self._rollback_cluster(name)
            raise

        credential = await self._issue(name, cluster.resource_id)
        if credential.is_set:
            if await self._store.set_credential(name, credential):
                record = replace(record, credential=credential)
            else:
                bound.warning("Record left the pool during provisioning, revoking identity")
                await self._issuer.revoke(name)
        bound.info("Provisioned instance")
        return record

    async def _new_name(self) -> str:
        for _ in range(_NAME_ATTEMPTS):
            name = f"{self._config.name_prefix}{uuid4().hex[:8]}"
            if not await self._store.exists(name):
                return name
        raise BrokerError(f"Could not generate a unique name after {_NAME_ATTEMPTS} attempts")

    async def _rollback_instance(self, name: str) -> None:
        try:
            await self._lifecycle.delete_instance(name)
        except UpstreamError as e:
            log.bind(name=name).error("Instance rollback failed, delete it manually: {}", e)

    async def _rollback_cluster(self, name: str) -> None:
        try:
            await self._lifecycle.delete_cluster(name)
        except UpstreamError as e:
            log.bind(name=name).error("Cluster rollback failed, delete it manually: {}", e)

    async def _issue(self, name: str, resource_id: str) -> Credential:
        try:
            issued = await self._issuer.issue(name, resource_id)
        except UpstreamError as e:
            log.bind(name=name).warning("Credential issuance failed, will retry: {}", e)
            return EMPTY_CREDENTIAL
        return issued.credential

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile_endpoints(self) -> list[str]:
        """Persist endpoints of instances that became ready.

        Returns the names that gained an endpoint on this pass. Instances
        that are not ready yet are skipped.
        """
        updated = []
        for record in await self._store.list_pending_endpoints():
            status = await self._poller.status(record.name)
            if not status.is_ready:
                continue
            if await self._store.set_endpoint(record.name, status.endpoint):
                log.bind(name=record.name).info("Endpoint recorded: {}", status.endpoint)
                updated.append(record.name)
        return updated

    async def reconcile_credentials(self) -> list[str]:
        """Retry issuance for records whose credential is missing."""
        issued = []
        for record in await self._store.list_missing_credentials():
            bound = log.bind(name=record.name)
            try:
                cluster = await self._lifecycle.describe_cluster(record.name)
                if cluster is None:
                    bound.warning("Cluster not found, cannot issue credential")
                    continue
                result = await self._issuer.issue(record.name, cluster.resource_id)
            except UpstreamError as e:
                bound.warning("Credential issuance failed again: {}", e)
                continue
            if await self._store.set_credential(record.name, result.credential):
                bound.info("Credential recorded")
                issued.append(record.name)
        return issued

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def run_cycle(self) -> None:
        """One preprovisioner pass over every plan with a minimum."""
        for plan in self._config.plans.values():
            if plan.minimum > 0:
                await self._guarded(
                    f"ensure_minimum[{plan.name}]",
                    self.ensure_minimum(plan.name, plan.minimum),
                )
        await self._guarded("reconcile_credentials", self.reconcile_credentials())
        await self._guarded("reconcile_endpoints", self.reconcile_endpoints())
        await self._guarded("sweep", self._teardown.sweep())

    async def run_forever(
        self,
        interval: int | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Run ``run_cycle`` every ``interval`` seconds until cancelled."""
        interval = interval or self._config.interval
        log.info("Preprovisioner started, cycle every {}s", interval)
        while True:
            await self.run_cycle()
            await sleep(interval)

    async def _guarded(self, step: str, call: Awaitable[object]) -> None:
        try:
            await call
        except BrokerError as e:
            log.bind(step=step).error("Cycle step failed: {}", e)
        except SQLAlchemyError as e:
            log.bind(step=step).error("Cycle step failed with database error {}", type(e).__name__)


__all__ = ["ProvisioningEngine"]
