"""Teardown of pooled instances and the reconciliation sweep.

Teardown spans three systems that cannot be updated together, so it is
a sequence of compensating steps with per-step status:

1. Mark the record Deleting so it can never be claimed again.
2. Request deletion of the instance, then the cluster.
3. Remove the record, but only once both requests were accepted.
   Otherwise it stays in Deleting and ``sweep`` retries it.
4. Revoke the credential.

Every external step is best-effort; a failure is recorded and the
remaining steps still run.
"""

from __future__ import annotations

from collections.abc import Awaitable

from injector import inject
from loguru import logger

from neptune_broker.credentials import CredentialIssuer
from neptune_broker.exceptions import NotFoundError, UpstreamError
from neptune_broker.lifecycle import ResourceLifecycleClient
from neptune_broker.store import PoolStore
from neptune_broker.types import StepResult, TeardownReport

log = logger.bind(component="teardown")


async def _attempt(step: str, call: Awaitable[object]) -> StepResult:
    try:
        await call
    except UpstreamError as e:
        log.bind(step=step).warning("Step failed: {}", e)
        return StepResult(step, ok=False, error=str(e))
    return StepResult(step, ok=True)


class TeardownCoordinator:
    @inject
    def __init__(
        self,
        store: PoolStore,
        lifecycle: ResourceLifecycleClient,
        issuer: CredentialIssuer,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._issuer = issuer

    async def delete(self, name: str) -> TeardownReport:
        """Tear down ``name`` and everything paired with it.

        Raises:
            NotFoundError: No record named ``name`` exists. No cloud call is made.
        """
        record = await self._store.mark_deleting(name)
        if record is None:
            raise NotFoundError(name)
        log.bind(name=name, plan=record.plan).info("Deleting instance")
        return await self._teardown(name)

    async def _teardown(self, name: str) -> TeardownReport:
        steps = [
            await _attempt("delete_instance", self._lifecycle.delete_instance(name)),
            await _attempt("delete_cluster", self._lifecycle.delete_cluster(name)),
        ]

        removed = all(s.ok for s in steps)
        if removed:
            await self._store.remove(name)
            steps.append(StepResult("remove_record", ok=True))
        else:
            steps.append(StepResult(
                "remove_record", ok=False, error="kept in deleting until cloud deletion is accepted"
            ))

        steps.extend(await self._revoke(name))

        report = TeardownReport(name=name, steps=tuple(steps), record_removed=removed)
        bound = log.bind(name=name)
        if report.ok:
            bound.info("Teardown complete")
        else:
            bound.warning(
                "Teardown incomplete, failed steps: {}",
                ", ".join(s.step for s in report.failures),
            )
        return report

    async def _revoke(self, name: str) -> list[StepResult]:
        try:
            return await self._issuer.revoke(name)
        except UpstreamError as e:
            log.bind(name=name).warning("Credential revocation failed: {}", e)
            return [StepResult("revoke_credential", ok=False, error=str(e))]

    async def sweep(self) -> list[TeardownReport]:
        """Retry stuck teardowns and revoke identities with no record.

        Records left in Deleting are torn down again. Broker-managed IAM
        identities that no pool record refers to are revoked.
        """
        reports = []
        for record in await self._store.list_deleting():
            log.bind(name=record.name).info("Retrying teardown")
            reports.append(await self._teardown(record.name))

        try:
            identities = await self._issuer.list_managed_identities()
        except UpstreamError as e:
            log.warning("Could not list managed identities: {}", e)
            return reports

        # Identities are listed before names: a record is always written
        # before its identity is issued.
        known = await self._store.names()
        for identity in identities:
            if identity in known:
                continue
            log.bind(name=identity).info("Revoking orphaned identity")
            steps = await self._revoke(identity)
            reports.append(TeardownReport(name=identity, steps=tuple(steps), record_removed=True))

        if reports:
            log.info("Sweep finished, {} item(s) processed", len(reports))
        return reports


__all__ = ["TeardownCoordinator"]
