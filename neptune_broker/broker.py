"""Broker context: the operation surface of the pooled-instance broker.

Example:
    >>> from neptune_broker import Broker, load_config
    >>>
    >>> async with Broker.create(load_config()) as broker:
    ...     lease = await broker.claim("small", "cust-1")
    ...     print(lease.endpoint)
"""

from __future__ import annotations

from types import TracebackType

from injector import Injector, Module, inject

from neptune_broker.claim import ClaimCoordinator
from neptune_broker.clients import BrokerModule
from neptune_broker.config import BrokerConfig
from neptune_broker.provisioning import ProvisioningEngine
from neptune_broker.store import PoolStore
from neptune_broker.teardown import TeardownCoordinator
from neptune_broker.types import InstanceRecord, Lease, TeardownReport


class Broker:
    """Owns the store and the coordinators for one process.

    Build it once with ``Broker.create`` and pass it to whatever serves
    requests or runs the preprovisioner. Close it to release the store's
    connection pool.
    """

    @inject
    def __init__(
        self,
        config: BrokerConfig,
        store: PoolStore,
        provisioning: ProvisioningEngine,
        claims: ClaimCoordinator,
        teardown: TeardownCoordinator,
    ) -> None:
        self.config = config
        self.store = store
        self.provisioning = provisioning
        self.claims = claims
        self.teardown = teardown

    @classmethod
    def create(cls, config: BrokerConfig, *modules: Module) -> Broker:
        """Wire a broker from ``config``. Extra modules override bindings."""
        return Injector([BrokerModule(config), *modules]).get(cls)

    async def __aenter__(self) -> Broker:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def plans(self) -> dict[str, str]:
        """Plan name to description."""
        return {name: plan.description for name, plan in self.config.plans.items()}

    async def ensure_minimum(self, plan: str, minimum: int) -> InstanceRecord | None:
        return await self.provisioning.ensure_minimum(plan, minimum)

    async def reconcile_endpoints(self) -> list[str]:
        return await self.provisioning.reconcile_endpoints()

    async def reconcile_credentials(self) -> list[str]:
        return await self.provisioning.reconcile_credentials()

    async def run_cycle(self) -> None:
        await self.provisioning.run_cycle()

    async def run_forever(self, interval: int | None = None) -> None:
        await self.provisioning.run_forever(interval)

    async def claim(self, plan: str, billing_code: str) -> Lease:
        return await self.claims.claim(plan, billing_code)

    async def lookup(self, name: str) -> Lease:
        return await self.claims.lookup(name)

    async def tag(self, name: str, key: str, value: str) -> None:
        await self.claims.tag(name, key, value)

    async def delete(self, name: str) -> TeardownReport:
        return await self.teardown.delete(name)

    async def sweep(self) -> list[TeardownReport]:
        return await self.teardown.sweep()


__all__ = ["Broker"]
