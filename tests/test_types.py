from datetime import datetime

import pytest
from botocore.exceptions import ClientError

from neptune_broker.constants import ClaimedFlag
from neptune_broker.exceptions import UpstreamError, error_code
from neptune_broker.types import (
    EMPTY_CREDENTIAL,
    Credential,
    InstanceRecord,
    InstanceState,
    StepResult,
    TeardownReport,
)

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

CRED = Credential("AKIAEXAMPLE", "very-secret")


def _record(claimed: ClaimedFlag, endpoint: str = "", credential: Credential = CRED) -> InstanceRecord:
    return InstanceRecord(
        name="db-1",
        plan="small",
        claimed=claimed,
        created_at=datetime(2024, 1, 1),
        endpoint=endpoint,
        credential=credential,
    )


class TestInstanceState:
    @pytest.mark.parametrize(
        ("record", "state"),
        [
            (_record(ClaimedFlag.NO), InstanceState.PROVISIONING),
            (_record(ClaimedFlag.NO, "h:8182", EMPTY_CREDENTIAL), InstanceState.PROVISIONING),
            (_record(ClaimedFlag.NO, "h:8182"), InstanceState.AVAILABLE),
            (_record(ClaimedFlag.YES, "h:8182"), InstanceState.CLAIMED),
            (_record(ClaimedFlag.DELETING, "h:8182"), InstanceState.DELETING),
        ],
    )
    def test_derived_state(self, record: InstanceRecord, state: InstanceState):
        assert record.state is state

    def test_needs_credential(self):
        assert _record(ClaimedFlag.NO, credential=EMPTY_CREDENTIAL).needs_credential
        assert not _record(ClaimedFlag.NO).needs_credential
        assert not _record(ClaimedFlag.YES, credential=EMPTY_CREDENTIAL).needs_credential


class TestCredential:
    def test_repr_masks_secret(self):
        assert "very-secret" not in repr(CRED)
        assert "very-secret" not in repr(_record(ClaimedFlag.NO))
        assert "AKIAEXAMPLE" in repr(CRED)

    def test_is_set(self):
        assert CRED.is_set
        assert not EMPTY_CREDENTIAL.is_set
        assert not Credential("AKIA", "").is_set


class TestTeardownReport:
    def test_partial(self):
        report = TeardownReport(
            name="db-1",
            steps=(StepResult("delete_instance", True), StepResult("delete_cluster", False, "boom")),
            record_removed=False,
        )

        assert not report.ok
        assert report.partial is not None
        assert "delete_cluster" in str(report.partial)
        assert report.partial.failures == (StepResult("delete_cluster", False, "boom"),)


class TestErrors:
    def test_upstream_from_client_error(self):
        exc = ClientError(
            {"Error": {"Code": "DBClusterNotFoundFault", "Message": "arn:aws:rds:x:1:cluster:c not found"}},
            "DeleteDBCluster",
        )
        err = UpstreamError.from_client_error("neptune", "DeleteDBCluster", exc)

        assert err.code == "DBClusterNotFoundFault"
        assert str(err) == "neptune DeleteDBCluster failed with DBClusterNotFoundFault: <arn> not found"
        assert error_code(exc) == error_code(err) == "DBClusterNotFoundFault"
        assert error_code(ValueError()) == ""
