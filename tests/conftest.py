"""Shared fixtures: in-memory Neptune/IAM/STS fakes and a SQLite-backed broker.

The fakes return boto-shaped dicts and raise real ``ClientError``s, and are
injected through the same client factories the broker uses in production.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from types import MappingProxyType
from typing import Any

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError
from injector import Binder, Injector, Module

from neptune_broker.broker import Broker
from neptune_broker.clients import (
    BrokerModule,
    IAMClientFactory,
    NeptuneClientFactory,
    STSClientFactory,
)
from neptune_broker.config import BrokerConfig, PlanConfig
from neptune_broker.store import PoolStore

ACCOUNT = "123456789012"
REGION = "us-west-2"


def client_error(code: str, operation: str, message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class _FakeClient:
    """Records calls and raises queued failures before delegating."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._failures: dict[str, list[Any]] = {}

    def fail(self, method: str, code: str, times: int | None = None, message: str = "") -> None:
        """Make ``method`` raise ``code``; forever when ``times`` is None."""
        self._failures[method] = [code, times, message]

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        failure = self._failures.get(method)
        if failure is None:
            return
        code, remaining, message = failure
        if remaining is not None:
            if remaining <= 0:
                return
            failure[1] = remaining - 1
        raise client_error(code, method, message)


class FakeNeptune(_FakeClient):
    def __init__(self) -> None:
        super().__init__()
        self.clusters: dict[str, dict[str, Any]] = {}
        self.instances: dict[str, dict[str, Any]] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self._ids = itertools.count(1)

    def make_available(self, name: str) -> None:
        self.instances[name]["DBInstanceStatus"] = "available"
        self.instances[name]["Endpoint"] = {
            "Address": f"{name}.cluster-abc.{REGION}.neptune.amazonaws.com",
            "Port": 8182,
        }

    def endpoint(self, name: str) -> str:
        return f"{name}.cluster-abc.{REGION}.neptune.amazonaws.com:8182"

    async def create_db_cluster(self, **params: Any) -> dict[str, Any]:
        self._enter("create_db_cluster")
        name = params["DBClusterIdentifier"]
        cluster = {
            "DBClusterIdentifier": name,
            "DbClusterResourceId": f"cluster-RES{next(self._ids):04d}",
            "DBClusterArn": f"arn:aws:rds:{REGION}:{ACCOUNT}:cluster:{name}",
            "Status": "creating",
            "Params": params,
        }
        self.clusters[name] = cluster
        self.tags[cluster["DBClusterArn"]] = {t["Key"]: t["Value"] for t in params.get("Tags", [])}
        return {"DBCluster": cluster}

    async def create_db_instance(self, **params: Any) -> dict[str, Any]:
        self._enter("create_db_instance")
        name = params["DBInstanceIdentifier"]
        instance = {
            "DBInstanceIdentifier": name,
            "DBInstanceArn": f"arn:aws:rds:{REGION}:{ACCOUNT}:db:{name}",
            "DBInstanceStatus": "creating",
            "Params": params,
        }
        self.instances[name] = instance
        self.tags[instance["DBInstanceArn"]] = {t["Key"]: t["Value"] for t in params.get("Tags", [])}
        return {"DBInstance": instance}

    async def describe_db_instances(self, DBInstanceIdentifier: str) -> dict[str, Any]:
        self._enter("describe_db_instances")
        if DBInstanceIdentifier not in self.instances:
            raise client_error("DBInstanceNotFound", "DescribeDBInstances")
        return {"DBInstances": [self.instances[DBInstanceIdentifier]]}

    async def describe_db_clusters(self, DBClusterIdentifier: str) -> dict[str, Any]:
        self._enter("describe_db_clusters")
        if DBClusterIdentifier not in self.clusters:
            raise client_error("DBClusterNotFoundFault", "DescribeDBClusters")
        return {"DBClusters": [self.clusters[DBClusterIdentifier]]}

    async def delete_db_instance(self, DBInstanceIdentifier: str, SkipFinalSnapshot: bool) -> dict:
        self._enter("delete_db_instance")
        if self.instances.pop(DBInstanceIdentifier, None) is None:
            raise client_error("DBInstanceNotFound", "DeleteDBInstance")
        return {}

    async def delete_db_cluster(self, DBClusterIdentifier: str, SkipFinalSnapshot: bool) -> dict:
        self._enter("delete_db_cluster")
        if self.clusters.pop(DBClusterIdentifier, None) is None:
            raise client_error("DBClusterNotFoundFault", "DeleteDBCluster")
        return {}

    async def add_tags_to_resource(self, ResourceName: str, Tags: list[dict[str, str]]) -> dict:
        self._enter("add_tags_to_resource")
        self.tags.setdefault(ResourceName, {}).update({t["Key"]: t["Value"] for t in Tags})
        return {}


class _UserPaginator:
    def __init__(self, iam: FakeIAM) -> None:
        self._iam = iam

    async def paginate(self, PathPrefix: str = "/") -> AsyncIterator[dict[str, Any]]:
        self._iam._enter("list_users")
        users = [
            {"UserName": name, "Path": user["Path"], "Arn": user["Arn"]}
            for name, user in self._iam.users.items()
            if user["Path"].startswith(PathPrefix)
        ]
        # two pages, to exercise pagination
        yield {"Users": users[:1]}
        yield {"Users": users[1:]}


class FakeIAM(_FakeClient):
    def __init__(self) -> None:
        super().__init__()
        self.users: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, str] = {}
        self.attached: dict[str, set[str]] = {}
        self.keys: dict[str, list[str]] = {}
        self.secrets: dict[str, str] = {}
        self._ids = itertools.count(1)

    def _require_user(self, name: str, operation: str) -> None:
        if name not in self.users:
            raise client_error("NoSuchEntity", operation, f"The user with name {name} cannot be found.")

    async def create_user(self, UserName: str, Path: str = "/", Tags: Any = ()) -> dict:
        self._enter("create_user")
        if UserName in self.users:
            raise client_error("EntityAlreadyExists", "CreateUser")
        self.users[UserName] = {"Arn": f"arn:aws:iam::{ACCOUNT}:user{Path}{UserName}", "Path": Path}
        self.attached[UserName] = set()
        self.keys[UserName] = []
        return {"User": {"UserName": UserName, **self.users[UserName]}}

    async def get_user(self, UserName: str) -> dict:
        self._enter("get_user")
        self._require_user(UserName, "GetUser")
        return {"User": {"UserName": UserName, **self.users[UserName]}}

    async def create_policy(self, PolicyName: str, Path: str, PolicyDocument: str) -> dict:
        self._enter("create_policy")
        arn = f"arn:aws:iam::{ACCOUNT}:policy{Path}{PolicyName}"
        if arn in self.policies:
            raise client_error("EntityAlreadyExists", "CreatePolicy")
        self.policies[arn] = PolicyDocument
        return {"Policy": {"PolicyName": PolicyName, "Arn": arn}}

    async def attach_user_policy(self, UserName: str, PolicyArn: str) -> dict:
        self._enter("attach_user_policy")
        self._require_user(UserName, "AttachUserPolicy")
        if PolicyArn not in self.policies:
            raise client_error("NoSuchEntity", "AttachUserPolicy")
        self.attached[UserName].add(PolicyArn)
        return {}

    async def list_access_keys(self, UserName: str) -> dict:
        self._enter("list_access_keys")
        self._require_user(UserName, "ListAccessKeys")
        return {"AccessKeyMetadata": [{"AccessKeyId": k} for k in self.keys[UserName]]}

    async def create_access_key(self, UserName: str) -> dict:
        self._enter("create_access_key")
        self._require_user(UserName, "CreateAccessKey")
        key_id = f"AKIA{next(self._ids):016d}"
        self.keys[UserName].append(key_id)
        self.secrets[key_id] = f"secret-{key_id}"
        return {"AccessKey": {"AccessKeyId": key_id, "SecretAccessKey": self.secrets[key_id]}}

    async def delete_access_key(self, UserName: str, AccessKeyId: str) -> dict:
        self._enter("delete_access_key")
        self._require_user(UserName, "DeleteAccessKey")
        self.keys[UserName].remove(AccessKeyId)
        return {}

    async def list_attached_user_policies(self, UserName: str) -> dict:
        self._enter("list_attached_user_policies")
        self._require_user(UserName, "ListAttachedUserPolicies")
        return {
            "AttachedPolicies": [
                {"PolicyName": arn.rsplit("/", 1)[-1], "PolicyArn": arn}
                for arn in sorted(self.attached[UserName])
            ]
        }

    async def detach_user_policy(self, UserName: str, PolicyArn: str) -> dict:
        self._enter("detach_user_policy")
        self._require_user(UserName, "DetachUserPolicy")
        if PolicyArn not in self.attached[UserName]:
            raise client_error("NoSuchEntity", "DetachUserPolicy")
        self.attached[UserName].discard(PolicyArn)
        return {}

    async def delete_policy(self, PolicyArn: str) -> dict:
        self._enter("delete_policy")
        if PolicyArn not in self.policies:
            raise client_error("NoSuchEntity", "DeletePolicy")
        if any(PolicyArn in arns for arns in self.attached.values()):
            raise client_error("DeleteConflict", "DeletePolicy")
        del self.policies[PolicyArn]
        return {}

    async def delete_user(self, UserName: str) -> dict:
        self._enter("delete_user")
        self._require_user(UserName, "DeleteUser")
        if self.keys[UserName] or self.attached[UserName]:
            raise client_error("DeleteConflict", "DeleteUser")
        del self.users[UserName], self.keys[UserName], self.attached[UserName]
        return {}

    def get_paginator(self, operation: str) -> _UserPaginator:
        assert operation == "list_users"
        return _UserPaginator(self)


class FakeSTS(_FakeClient):
    async def get_caller_identity(self) -> dict[str, str]:
        self._enter("get_caller_identity")
        return {"Account": ACCOUNT, "Arn": f"arn:aws:iam::{ACCOUNT}:user/broker"}


def _factory(client: Any):
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        yield client
    return factory


class FakeAWSModule(Module):
    """Replaces the real client factories with the in-memory fakes."""

    def __init__(self, neptune: FakeNeptune, iam: FakeIAM, sts: FakeSTS) -> None:
        self._neptune = neptune
        self._iam = iam
        self._sts = sts

    def configure(self, binder: Binder) -> None:
        binder.bind(NeptuneClientFactory, to=NeptuneClientFactory(_factory(self._neptune)))
        binder.bind(IAMClientFactory, to=IAMClientFactory(_factory(self._iam)))
        binder.bind(STSClientFactory, to=STSClientFactory(_factory(self._sts)))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path: Path) -> BrokerConfig:
    return BrokerConfig(
        region=REGION,
        database_url=f"sqlite:///{tmp_path / 'pool.db'}",
        account_id=ACCOUNT,
        name_prefix="test-",
        security_group_id="sg-0123",
        subnet_group_name="broker-subnets",
        kms_key_id="kms-key-1",
        timezone="UTC",
        plans=MappingProxyType({
            "small": PlanConfig("small", "db.r4.large", "Small DB Instance", minimum=2),
            "large": PlanConfig("large", "db.r4.2xlarge", "Large DB Instance"),
        }),
    )


@pytest.fixture
def neptune() -> FakeNeptune:
    return FakeNeptune()


@pytest.fixture
def iam() -> FakeIAM:
    return FakeIAM()


@pytest.fixture
def sts() -> FakeSTS:
    return FakeSTS()


@pytest.fixture
def injector(config: BrokerConfig, neptune: FakeNeptune, iam: FakeIAM, sts: FakeSTS) -> Injector:
    return Injector([BrokerModule(config), FakeAWSModule(neptune, iam, sts)])


@pytest_asyncio.fixture
async def broker(
    config: BrokerConfig,
    neptune: FakeNeptune,
    iam: FakeIAM,
    sts: FakeSTS,
) -> AsyncIterator[Broker]:
    async with Broker.create(config, FakeAWSModule(neptune, iam, sts)) as b:
        await b.initialize()
        yield b


@pytest_asyncio.fixture
async def store(config: BrokerConfig) -> AsyncIterator[PoolStore]:
    s = PoolStore.from_url(config.async_database_url, timezone=config.timezone)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def ready(broker: Broker, neptune: FakeNeptune):
    """Mark every created instance ready and let the broker record endpoints."""

    async def make_ready() -> list[str]:
        for name in neptune.instances:
            neptune.make_available(name)
        return await broker.reconcile_endpoints()

    return make_ready
