"""Neptune resource lifecycle adapter.

Thin async wrapper over the Neptune API: cluster and instance creation,
status lookups, deletion and tagging. Every call is retried on throttling
and surfaces failures as ``UpstreamError``.
"""

from __future__ import annotations

from typing import Any

from injector import inject
from loguru import logger

from neptune_broker.clients import AccountResolver, NeptuneClientFactory, aws_retry, upstream
from neptune_broker.config import BrokerConfig, PlanConfig
from neptune_broker.constants import ENGINE, GONE_CODES, BrokerTag
from neptune_broker.exceptions import UpstreamError
from neptune_broker.types import ClusterHandle, InstanceDescription, InstanceHandle

log = logger.bind(component="neptune")


def _tags(name: str, plan: str) -> list[dict[str, str]]:
    return [
        {"Key": BrokerTag.NAME, "Value": name},
        {"Key": BrokerTag.MANAGED, "Value": "true"},
        {"Key": BrokerTag.PLAN, "Value": plan},
    ]


def _endpoint(instance: dict[str, Any]) -> str:
    endpoint = instance.get("Endpoint") or {}
    address, port = endpoint.get("Address"), endpoint.get("Port")
    if not address or port is None:
        return ""
    return f"{address}:{port}"


class ResourceLifecycleClient:
    """Creates, inspects and destroys Neptune clusters and instances.

    A pooled instance is one cluster plus one writer instance, both
    named after the pool record.
    """

    @inject
    def __init__(
        self,
        config: BrokerConfig,
        neptune: NeptuneClientFactory,
        account: AccountResolver,
    ) -> None:
        self._config = config
        self._neptune = neptune
        self._account = account

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    @aws_retry
    async def create_cluster(self, name: str, plan: PlanConfig) -> ClusterHandle:
        """Create an encrypted, IAM-auth enabled cluster."""
        cfg = self._config
        with upstream("neptune", "CreateDBCluster"):
            async with self._neptune() as neptune:
                resp = await neptune.create_db_cluster(
                    Engine=ENGINE,
                    DBClusterIdentifier=name,
                    DBSubnetGroupName=cfg.subnet_group_name,
                    StorageEncrypted=True,
                    KmsKeyId=cfg.kms_key_id,
                    EnableIAMDatabaseAuthentication=True,
                    VpcSecurityGroupIds=[cfg.security_group_id],
                    Tags=_tags(name, plan.name),
                )
        cluster = resp["DBCluster"]
        log.bind(name=name, plan=plan.name).info("Cluster creation requested")
        return ClusterHandle(
            identifier=cluster["DBClusterIdentifier"],
            resource_id=cluster["DbClusterResourceId"],
            arn=cluster.get("DBClusterArn", ""),
        )

    @aws_retry
    async def create_instance(self, name: str, plan: PlanConfig) -> InstanceHandle:
        with upstream("neptune", "CreateDBInstance"):
            async with self._neptune() as neptune:
                resp = await neptune.create_db_instance(
                    DBInstanceClass=plan.instance_class,
                    DBInstanceIdentifier=name,
                    Engine=ENGINE,
                    DBClusterIdentifier=name,
                    DBSubnetGroupName=self._config.subnet_group_name,
                    Tags=_tags(name, plan.name),
                )
        instance = resp["DBInstance"]
        log.bind(name=name, plan=plan.name).info(
            "Instance creation requested ({})", plan.instance_class
        )
        return InstanceHandle(
            identifier=instance["DBInstanceIdentifier"],
            arn=instance.get("DBInstanceArn", ""),
        )

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @aws_retry
    async def describe_instance(self, name: str) -> InstanceDescription | None:
        """Status and endpoint of the instance, or None if it does not exist."""
        try:
            with upstream("neptune", "DescribeDBInstances"):
                async with self._neptune() as neptune:
                    resp = await neptune.describe_db_instances(DBInstanceIdentifier=name)
        except UpstreamError as e:
            if e.code in GONE_CODES:
                return None
            raise

        instances = resp.get("DBInstances", [])
        if not instances:
            return None
        instance = instances[0]
        return InstanceDescription(
            identifier=instance["DBInstanceIdentifier"],
            status=instance.get("DBInstanceStatus", ""),
            endpoint=_endpoint(instance),
        )

    @aws_retry
    async def describe_cluster(self, name: str) -> ClusterHandle | None:
        try:
            with upstream("neptune", "DescribeDBClusters"):
                async with self._neptune() as neptune:
                    resp = await neptune.describe_db_clusters(DBClusterIdentifier=name)
        except UpstreamError as e:
            if e.code in GONE_CODES:
                return None
            raise

        clusters = resp.get("DBClusters", [])
        if not clusters:
            return None
        cluster = clusters[0]
        return ClusterHandle(
            identifier=cluster["DBClusterIdentifier"],
            resource_id=cluster["DbClusterResourceId"],
            arn=cluster.get("DBClusterArn", ""),
        )

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def delete_instance(self, name: str) -> bool:
        """Request instance deletion. Returns False if it was already gone."""
        return await self._delete("DeleteDBInstance", "delete_db_instance", DBInstanceIdentifier=name)

    async def delete_cluster(self, name: str) -> bool:
        """Request cluster deletion. Returns False if it was already gone."""
        return await self._delete("DeleteDBCluster", "delete_db_cluster", DBClusterIdentifier=name)

    @aws_retry
    async def _delete(self, operation: str, method: str, **params: str) -> bool:
        try:
            with upstream("neptune", operation):
                async with self._neptune() as neptune:
                    await getattr(neptune, method)(SkipFinalSnapshot=True, **params)
        except UpstreamError as e:
            if e.code in GONE_CODES:
                log.debug("{} skipped, resource already gone", operation)
                return False
            raise
        return True

    # -------------------------------------------------------------------------
    # Tagging
    # -------------------------------------------------------------------------

    @aws_retry
    async def tag_resource(self, arn: str, key: str, value: str) -> None:
        with upstream("neptune", "AddTagsToResource"):
            async with self._neptune() as neptune:
                await neptune.add_tags_to_resource(
                    ResourceName=arn,
                    Tags=[{"Key": key, "Value": value}],
                )

    async def cluster_arn(self, name: str) -> str:
        account = await self._account.account_id()
        return f"arn:aws:rds:{self._config.region}:{account}:cluster:{name}"

    async def instance_arn(self, name: str) -> str:
        account = await self._account.account_id()
        return f"arn:aws:rds:{self._config.region}:{account}:db:{name}"


__all__ = ["ResourceLifecycleClient"]
