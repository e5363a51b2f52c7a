"""IAM credential issuance for pooled instances.

Each instance gets its own IAM user, named after the instance, holding
one access key and one managed policy that allows ``neptune-db:*`` on
that instance's cluster and nothing else.
"""

from __future__ import annotations

import json
from typing import Any

from injector import inject
from loguru import logger

from neptune_broker.clients import AccountResolver, IAMClientFactory, aws_retry, upstream
from neptune_broker.config import BrokerConfig
from neptune_broker.constants import (
    GONE_CODES,
    IAM_PATH,
    NEPTUNE_DB_ACTION,
    POLICY_SUFFIX,
    POLICY_VERSION,
    BrokerTag,
)
from neptune_broker.exceptions import UpstreamError
from neptune_broker.types import Credential, IssuedCredential, StepResult

log = logger.bind(component="iam")

_ALREADY_EXISTS = "EntityAlreadyExists"


def policy_name(name: str) -> str:
    return f"{name}{POLICY_SUFFIX}"


def policy_document(region: str, account: str, resource_id: str) -> str:
    """Policy granting full data-plane access to a single cluster."""
    resource = f"arn:aws:neptune-db:{region}:{account}:{resource_id}"
    return json.dumps({
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [NEPTUNE_DB_ACTION],
                "Resource": [f"{resource}/*", resource],
            }
        ],
    })


class CredentialIssuer:
    """Issues and revokes per-instance IAM identities.

    ``issue`` is idempotent: an identity or policy left behind by an
    earlier attempt is reused, and its stale access keys are replaced.
    """

    @inject
    def __init__(
        self,
        config: BrokerConfig,
        iam: IAMClientFactory,
        account: AccountResolver,
    ) -> None:
        self._config = config
        self._iam = iam
        self._account = account

    async def policy_arn(self, name: str) -> str:
        account = await self._account.account_id()
        return f"arn:aws:iam::{account}:policy{IAM_PATH}{policy_name(name)}"

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    @aws_retry
    async def issue(self, name: str, resource_id: str) -> IssuedCredential:
        """Create the identity, its policy and a fresh access key."""
        account = await self._account.account_id()
        document = policy_document(self._config.region, account, resource_id)
        bound = log.bind(name=name)

        async with self._iam() as iam:
            identity_arn = await self._ensure_user(iam, name)
            policy_arn = await self._ensure_policy(iam, name, document)

            with upstream("iam", "AttachUserPolicy"):
                await iam.attach_user_policy(UserName=name, PolicyArn=policy_arn)

            stale = await self._access_key_ids(iam, name)
            for key_id in stale:
                with upstream("iam", "DeleteAccessKey"):
                    await iam.delete_access_key(UserName=name, AccessKeyId=key_id)
            if stale:
                bound.debug("Replaced {} stale access key(s)", len(stale))

            with upstream("iam", "CreateAccessKey"):
                resp = await iam.create_access_key(UserName=name)

        key = resp["AccessKey"]
        bound.info("Issued credential")
        return IssuedCredential(
            identity=name,
            identity_arn=identity_arn,
            policy_arn=policy_arn,
            credential=Credential(
                access_key_id=key["AccessKeyId"],
                secret_access_key=key["SecretAccessKey"],
            ),
        )

    async def _ensure_user(self, iam: Any, name: str) -> str:
        try:
            with upstream("iam", "CreateUser"):
                resp = await iam.create_user(
                    UserName=name,
                    Path=IAM_PATH,
                    Tags=[{"Key": BrokerTag.MANAGED, "Value": "true"}],
                )
        except UpstreamError as e:
            if e.code != _ALREADY_EXISTS:
                raise
            log.bind(name=name).debug("Reusing existing identity")
            with upstream("iam", "GetUser"):
                resp = await iam.get_user(UserName=name)
        return resp["User"]["Arn"]

    async def _ensure_policy(self, iam: Any, name: str, document: str) -> str:
        try:
            with upstream("iam", "CreatePolicy"):
                resp = await iam.create_policy(
                    PolicyName=policy_name(name),
                    Path=IAM_PATH,
                    PolicyDocument=document,
                )
        except UpstreamError as e:
            if e.code != _ALREADY_EXISTS:
                raise
            log.bind(name=name).debug("Reusing existing policy")
            return await self.policy_arn(name)
        return resp["Policy"]["Arn"]

    async def _access_key_ids(self, iam: Any, name: str) -> list[str]:
        with upstream("iam", "ListAccessKeys"):
            resp = await iam.list_access_keys(UserName=name)
        return [k["AccessKeyId"] for k in resp.get("AccessKeyMetadata", [])]

    # -------------------------------------------------------------------------
    # Revoke
    # -------------------------------------------------------------------------

    async def revoke(self, name: str) -> list[StepResult]:
        """Remove the identity and everything attached to it.

        Attached policies are enumerated, so identities whose policy lives
        outside the broker path are emptied too.
        Every step is attempted even if an earlier one failed. Steps whose
        target no longer exists count as successful.
        """
        steps: list[StepResult] = []

        async with self._iam() as iam:
            detached, owned = await self._detach_policies(iam, name)
            steps.append(detached)
            deleted = [
                await _step("delete_policy", "DeletePolicy", iam.delete_policy(PolicyArn=arn))
                for arn in sorted(owned)
            ]
            steps.append(next((s for s in deleted if not s.ok), deleted[0]))
            steps.append(await self._delete_access_keys(iam, name))
            steps.append(await _step(
                "delete_identity",
                "DeleteUser",
                iam.delete_user(UserName=name),
            ))

        failed = [s.step for s in steps if not s.ok]
        if failed:
            log.bind(name=name).warning("Revocation incomplete: {}", ", ".join(failed))
        else:
            log.bind(name=name).info("Revoked credential")
        return steps

    async def _detach_policies(self, iam: Any, name: str) -> tuple[StepResult, set[str]]:
        """Detach every managed policy of ``name``.

        Also returns the ARNs of the identity's own policies, which are
        deleted afterwards. Policies shared with other identities are only
        detached.
        """
        owned = {await self.policy_arn(name)}
        try:
            with upstream("iam", "ListAttachedUserPolicies"):
                resp = await iam.list_attached_user_policies(UserName=name)
            for policy in resp.get("AttachedPolicies", []):
                with upstream("iam", "DetachUserPolicy"):
                    await iam.detach_user_policy(UserName=name, PolicyArn=policy["PolicyArn"])
                if policy["PolicyName"] == policy_name(name):
                    owned.add(policy["PolicyArn"])
        except UpstreamError as e:
            if e.code not in GONE_CODES:
                log.bind(name=name).warning("Detaching policies failed: {}", e.code)
                return StepResult("detach_policy", ok=False, error=str(e)), owned
        return StepResult("detach_policy", ok=True), owned

    async def _delete_access_keys(self, iam: Any, name: str) -> StepResult:
        try:
            for key_id in await self._access_key_ids(iam, name):
                with upstream("iam", "DeleteAccessKey"):
                    await iam.delete_access_key(UserName=name, AccessKeyId=key_id)
        except UpstreamError as e:
            if e.code not in GONE_CODES:
                return StepResult("delete_access_keys", ok=False, error=str(e))
        return StepResult("delete_access_keys", ok=True)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def list_managed_identities(self) -> list[str]:
        """Names of every identity under the broker's IAM path."""
        names: list[str] = []
        with upstream("iam", "ListUsers"):
            async with self._iam() as iam:
                paginator = iam.get_paginator("list_users")
                async for page in paginator.paginate(PathPrefix=IAM_PATH):
                    names.extend(u["UserName"] for u in page.get("Users", []))
        return names


async def _step(step: str, operation: str, call: Any) -> StepResult:
    try:
        with upstream("iam", operation):
            await call
    except UpstreamError as e:
        if e.code in GONE_CODES:
            return StepResult(step, ok=True)
        log.bind(step=step).warning("{} failed: {}", operation, e.code)
        return StepResult(step, ok=False, error=str(e))
    return StepResult(step, ok=True)


__all__ = ["CredentialIssuer", "policy_document", "policy_name"]
