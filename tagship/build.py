"""
Container image build and publish.
"""

import base64
import logging
import subprocess
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import BuildError
from .events import EventTypes, emit_event
from .state import get_release_dir
from .tags import image_reference

logger = logging.getLogger(__name__)


def _run_logged(release_id: str, command: List[str], stdin: Optional[str] = None) -> None:
    """
    Run a docker command, appending its output to build.log.

    Raises:
        BuildError: If the command can't be started or exits non-zero
    """
    build_log = get_release_dir(release_id) / "build.log"
    # Credentials only ever travel on stdin, so argv is safe to log
    shown = " ".join(command)

    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.PIPE if stdin is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1
        )
    except OSError as e:
        raise BuildError(
            f"Failed to run {command[0]}: {e}",
            hint="Check that docker is installed and on PATH"
        ) from e

    if stdin is not None:
        process.stdin.write(stdin)
        process.stdin.close()

    output_lines = []
    with open(build_log, "a") as log_file:
        log_file.write(f"=== {shown} ===\n")
        for line in process.stdout:
            line = line.rstrip()
            output_lines.append(line)
            log_file.write(line + "\n")
            log_file.flush()

    process.wait()

    if process.returncode != 0:
        raise BuildError(
            f"Command failed: {shown}",
            hint="Check build.log for details",
            last_lines=output_lines[-40:]
        )


def registry_host(repository_uri: str) -> str:
    """Registry host part of an ECR repository URI."""
    return repository_uri.split("/", 1)[0]


def ecr_login(release_id: str, repository_uri: str, region: str) -> None:
    """
    Log docker in to the ECR registry holding ``repository_uri``.

    Raises:
        BuildError: If the token can't be fetched or docker login fails
    """
    try:
        ecr = boto3.client("ecr", region_name=region)
        auth = ecr.get_authorization_token()
    except (ClientError, BotoCoreError) as e:
        raise BuildError(
            f"Failed to get ECR authorization token: {e}",
            hint="Check AWS credentials and ecr:GetAuthorizationToken permission"
        ) from e

    data = auth["authorizationData"][0]
    token = base64.b64decode(data["authorizationToken"]).decode("utf-8")
    username, password = token.split(":", 1)

    _run_logged(
        release_id,
        ["docker", "login", "--username", username, "--password-stdin", registry_host(repository_uri)],
        stdin=password
    )


def build_image(release_id: str, local_name: str, context: str = ".", dockerfile: str = "Dockerfile") -> None:
    """
    Build the application image.

    Args:
        release_id: Release ID
        local_name: Local image name, e.g. "app:v1.2.3"
        context: Docker build context
        dockerfile: Dockerfile path
    """
    emit_event(release_id, EventTypes.BUILD_START, {"image": local_name, "context": context})
    _run_logged(release_id, ["docker", "build", "--pull", "-t", local_name, "-f", dockerfile, context])
    emit_event(release_id, EventTypes.BUILD_DONE, {"image": local_name})


def push_image(release_id: str, local_name: str, repository_uri: str, tags: List[str]) -> List[str]:
    """
    Tag and push the image under every tag.

    Args:
        release_id: Release ID
        local_name: Local image name
        repository_uri: ECR repository URI
        tags: Registry tags, in push order

    Returns:
        List of pushed image references
    """
    pushed = []
    for tag in tags:
        remote = image_reference(repository_uri, tag)
        _run_logged(release_id, ["docker", "tag", local_name, remote])
        _run_logged(release_id, ["docker", "push", remote])
        logger.info(f"Pushed {remote}")
        pushed.append(remote)

    emit_event(release_id, EventTypes.PUSH_DONE, {"images": pushed})
    return pushed


def publish(release_id: str, repository_uri: str, tags: List[str], region: str,
            context: str = ".", dockerfile: str = "Dockerfile") -> List[str]:
    """
    Build the image and publish it to ECR under all release tags.

    Returns:
        List of pushed image references, first one is the version tag
    """
    local_name = f"{repository_uri.rsplit('/', 1)[-1]}:{tags[0]}"
    build_image(release_id, local_name, context=context, dockerfile=dockerfile)
    ecr_login(release_id, repository_uri, region)
    return push_image(release_id, local_name, repository_uri, tags)
