"""
Tests for the manual rollback helpers.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, WaiterError

from tagship.errors import RollbackError
from tagship.rollback import (
    find_release_by_tag, list_task_definition_revisions, previous_release,
    previous_task_definition, rollback_guidance, rollback_to_revision
)
from tagship.state import record_successful_release

TD = "arn:aws:ecs:us-east-1:123456789012:task-definition/app:{}"


def _client_error(operation):
    return ClientError({"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, operation)


@pytest.fixture
def ecs():
    with patch("tagship.rollback.boto3.client") as client:
        mock_ecs = MagicMock()
        client.return_value = mock_ecs
        yield mock_ecs


class TestTaskDefinitions:

    def test_list_revisions(self, ecs):
        ecs.get_paginator.return_value.paginate.return_value = [
            {"taskDefinitionArns": [TD.format(9), TD.format(8)]},
            {"taskDefinitionArns": [TD.format(7)]},
        ]

        arns = list_task_definition_revisions("app", "us-east-1")

        assert arns == [TD.format(9), TD.format(8), TD.format(7)]
        ecs.get_paginator.assert_called_once_with("list_task_definitions")
        ecs.get_paginator.return_value.paginate.assert_called_once_with(
            familyPrefix="app", status="ACTIVE", sort="DESC"
        )

    def test_list_revisions_limit(self, ecs):
        ecs.get_paginator.return_value.paginate.return_value = [
            {"taskDefinitionArns": [TD.format(n) for n in range(9, 0, -1)]},
        ]
        assert len(list_task_definition_revisions("app", "us-east-1", limit=3)) == 3

    def test_list_revisions_error(self, ecs):
        ecs.get_paginator.return_value.paginate.side_effect = _client_error("ListTaskDefinitions")
        with pytest.raises(RollbackError):
            list_task_definition_revisions("app", "us-east-1")

    def test_previous_task_definition(self, ecs):
        ecs.describe_services.return_value = {"services": [{"taskDefinition": TD.format(8)}]}
        ecs.get_paginator.return_value.paginate.return_value = [
            {"taskDefinitionArns": [TD.format(9), TD.format(8), TD.format(7)]},
        ]

        assert previous_task_definition("cluster", "service", "app", "us-east-1") == TD.format(7)

    def test_no_previous_task_definition(self, ecs):
        ecs.describe_services.return_value = {"services": [{"taskDefinition": TD.format(1)}]}
        ecs.get_paginator.return_value.paginate.return_value = [{"taskDefinitionArns": [TD.format(1)]}]

        assert previous_task_definition("cluster", "service", "app", "us-east-1") is None


class TestRollbackToRevision:

    def test_updates_service_and_waits(self, ecs):
        result = rollback_to_revision("cluster", "service", TD.format(7), "us-east-1", delay=1, max_attempts=2)

        ecs.update_service.assert_called_once_with(
            cluster="cluster", service="service", taskDefinition=TD.format(7), forceNewDeployment=True
        )
        ecs.get_waiter.assert_called_once_with("services_stable")
        ecs.get_waiter.return_value.wait.assert_called_once_with(
            cluster="cluster", services=["service"], WaiterConfig={"Delay": 1, "MaxAttempts": 2}
        )
        assert result["stable"] is True

    def test_no_wait(self, ecs):
        result = rollback_to_revision("cluster", "service", TD.format(7), "us-east-1", wait=False)
        ecs.get_waiter.assert_not_called()
        assert result["stable"] is None

    def test_update_failure(self, ecs):
        ecs.update_service.side_effect = _client_error("UpdateService")
        with pytest.raises(RollbackError, match="Failed to update service"):
            rollback_to_revision("cluster", "service", TD.format(7), "us-east-1")

    def test_not_stable(self, ecs):
        ecs.get_waiter.return_value.wait.side_effect = WaiterError("ServicesStable", "Max attempts exceeded", {})
        with pytest.raises(RollbackError, match="did not stabilise"):
            rollback_to_revision("cluster", "service", TD.format(7), "us-east-1")


class TestGuidance:

    def test_previous_release_skips_failed_tag(self, tagship_home):
        record_successful_release("r-20240101-120000-aaaa", "v1.0.0", "repo:v1.0.0", TD.format(5))
        record_successful_release("r-20240102-120000-bbbb", "v1.1.0", "repo:v1.1.0", TD.format(6))

        assert previous_release()["version_tag"] == "v1.1.0"
        assert previous_release(exclude_tag="v1.1.0")["version_tag"] == "v1.0.0"
        assert find_release_by_tag("v1.0.0")["task_definition_arn"] == TD.format(5)
        assert find_release_by_tag("v9.9.9") is None

    def test_guidance_with_history(self, tagship_home):
        record_successful_release("r-20240101-120000-aaaa", "v1.0.0", "repo:v1.0.0", TD.format(5))

        lines = rollback_guidance(failed_tag="v1.1.0", cluster="c", service="s")
        text = "\n".join(lines)

        assert "Automatic rollback is not performed" in lines[0]
        assert "tagship rollback --tag v1.0.0" in text
        assert f"tagship rollback --revision {TD.format(5)}" in text
        assert "aws ecs update-service --cluster c --service s" in text

    def test_guidance_without_history(self, tagship_home):
        text = "\n".join(rollback_guidance(failed_tag="v1.0.0"))
        assert "No verified release recorded" in text
        assert "update-service" not in text
