"""
Manual rollback follow-ups.

Nothing here runs automatically: a failed release only surfaces
``rollback_guidance``; an operator then issues one of the two actions,
re-deploying a previous image tag or pointing the service at a previous
task definition revision.
"""

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .errors import RollbackError
from .state import read_history

logger = logging.getLogger(__name__)


def list_task_definition_revisions(family: str, region: str, limit: int = 10) -> List[str]:
    """
    List task definition ARNs for a family, newest first.

    Args:
        family: Task definition family
        region: AWS region
        limit: Maximum number of ARNs to return

    Returns:
        List of task definition ARNs

    Raises:
        RollbackError: If the ECS API call fails
    """
    try:
        ecs = boto3.client("ecs", region_name=region)
        paginator = ecs.get_paginator("list_task_definitions")

        arns: List[str] = []
        for page in paginator.paginate(familyPrefix=family, status="ACTIVE", sort="DESC"):
            arns.extend(page.get("taskDefinitionArns", []))
            if len(arns) >= limit:
                break
    except (ClientError, BotoCoreError) as e:
        raise RollbackError(
            f"Failed to list task definitions for {family}: {e}",
            hint="Check AWS credentials and ecs:ListTaskDefinitions permission"
        ) from e

    return arns[:limit]


def current_task_definition(cluster: str, service: str, region: str) -> Optional[str]:
    """
    Task definition ARN the service is currently configured with.

    Raises:
        RollbackError: If the service can't be described
    """
    try:
        ecs = boto3.client("ecs", region_name=region)
        response = ecs.describe_services(cluster=cluster, services=[service])
    except (ClientError, BotoCoreError) as e:
        raise RollbackError(f"Failed to describe service {service}: {e}") from e

    services = response.get("services", [])
    if not services:
        return None
    return services[0].get("taskDefinition")


def previous_task_definition(cluster: str, service: str, family: str, region: str) -> Optional[str]:
    """
    The active revision immediately older than the one the service runs.
    """
    current = current_task_definition(cluster, service, region)
    revisions = list_task_definition_revisions(family, region, limit=50)

    if current in revisions:
        index = revisions.index(current)
        return revisions[index + 1] if index + 1 < len(revisions) else None

    return revisions[1] if len(revisions) > 1 else None


def rollback_to_revision(cluster: str, service: str, task_definition: str, region: str,
                         wait: bool = True, delay: int = 15, max_attempts: int = 40) -> Dict[str, Any]:
    """
    Point the service at an earlier task definition and force a new deployment.

    Args:
        cluster: ECS cluster name
        service: ECS service name
        task_definition: Task definition ARN or family:revision
        region: AWS region
        wait: Block on the services_stable waiter
        delay: Waiter delay in seconds
        max_attempts: Waiter attempts

    Returns:
        Dict describing the issued rollback

    Raises:
        RollbackError: If the update fails or the service doesn't stabilise
    """
    logger.info(f"Rolling back {cluster}/{service} to {task_definition}")

    try:
        ecs = boto3.client("ecs", region_name=region)
        ecs.update_service(
            cluster=cluster,
            service=service,
            taskDefinition=task_definition,
            forceNewDeployment=True
        )
    except (ClientError, BotoCoreError) as e:
        raise RollbackError(
            f"Failed to update service {service}: {e}",
            hint="Check that the task definition revision is ACTIVE"
        ) from e

    stable = None
    if wait:
        try:
            waiter = ecs.get_waiter("services_stable")
            waiter.wait(
                cluster=cluster,
                services=[service],
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts}
            )
            stable = True
        except WaiterError as e:
            raise RollbackError(
                f"Service {service} did not stabilise after rollback: {e}",
                hint="Inspect the service events in the ECS console"
            ) from e

    return {
        "cluster": cluster,
        "service": service,
        "task_definition": task_definition,
        "stable": stable,
    }


def previous_release(exclude_tag: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Most recent verified release, skipping ``exclude_tag``.
    """
    for entry in reversed(read_history()):
        if exclude_tag and entry.get("version_tag") == exclude_tag:
            continue
        return entry
    return None


def find_release_by_tag(version_tag: str) -> Optional[Dict[str, Any]]:
    """Most recent verified release for ``version_tag``."""
    for entry in reversed(read_history()):
        if entry.get("version_tag") == version_tag:
            return entry
    return None


def rollback_guidance(failed_tag: Optional[str] = None, cluster: Optional[str] = None,
                      service: Optional[str] = None) -> List[str]:
    """
    Human-readable follow-up commands for a failed release.

    Args:
        failed_tag: Version tag of the failed release
        cluster: ECS cluster name, if known
        service: ECS service name, if known

    Returns:
        List of lines
    """
    lines = ["Automatic rollback is not performed. To restore service:"]
    prior = previous_release(exclude_tag=failed_tag)

    if prior:
        lines.append(
            f"  1. Re-deploy the last verified image: "
            f"tagship rollback --tag {prior['version_tag']}"
        )
        if prior.get("task_definition_arn"):
            lines.append(
                f"  2. Or pin the service to its task definition: "
                f"tagship rollback --revision {prior['task_definition_arn']}"
            )
    else:
        lines.append("  1. No verified release recorded; re-deploy a known good tag:")
        lines.append("     tagship release vX.Y.Z --skip-build")

    if cluster and service:
        lines.append(
            f"  Direct ECS alternative: aws ecs update-service --cluster {cluster} "
            f"--service {service} --task-definition <previous-revision> --force-new-deployment"
        )

    return lines
