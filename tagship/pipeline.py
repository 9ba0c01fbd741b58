"""
Release pipeline: build, converge, verify.

One call runs one release end to end on the calling thread. Concurrent
releases are not coordinated here; the CI runner's concurrency policy is the
only guard.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .build import publish
from .config import ReleaseConfig, load_config, terraform_source_dir, to_tfvars
from .errors import BuildError, ConvergenceError, TagshipError, VerificationError
from .events import EventTypes, emit_event
from .ids import new_release_id
from .rollback import rollback_guidance
from .state import (
    create_release_dir, record_successful_release, tail_log_file,
    write_outputs_json, write_release_json
)
from .status import PipelineStage, can_transition_to, is_terminal_status
from .tags import base_tags, image_reference, image_tags, parse_version_tag
from .terraform import converge, get_terraform_outputs, prepare_workdir
from .verify import ProbeResult, verify_health

logger = logging.getLogger(__name__)

FAILURE_LOGS = {
    "build": "build.log",
    "convergence": "terraform.log",
}


class _Run:
    """Tracks the stage of a single release."""

    def __init__(self, release_id: str):
        self.release_id = release_id
        self.stage = PipelineStage.BUILDING

    def advance(self, target: PipelineStage) -> None:
        if not can_transition_to(self.stage, target):
            raise RuntimeError(f"Invalid stage transition {self.stage.value} -> {target.value}")
        logger.info(f"[{self.release_id}] {self.stage.value} -> {target.value}")
        self.stage = target


def resolve_repository_uri(config: ReleaseConfig, workdir: Path) -> str:
    """
    ECR repository URI from config, else from the bundle's outputs.

    Raises:
        BuildError: If neither is available
    """
    if config.repository_uri:
        return config.repository_uri

    repository_uri = get_terraform_outputs(workdir).get("ecr_repository_url")
    if not repository_uri:
        raise BuildError(
            "ECR repository URI is unknown",
            hint="Set TAGSHIP_REPOSITORY_URI or bootstrap the registry with an initial terraform apply"
        )
    return repository_uri


def public_entry_point(outputs: Dict[str, Any]) -> str:
    """
    Public URL of the load balancer from terraform outputs.

    Raises:
        ConvergenceError: If the outputs carry no entry point
    """
    url = outputs.get("public_url") or outputs.get("alb_dns_name")
    if not url:
        raise ConvergenceError(
            "Terraform outputs contain no public entry point",
            hint="The infra bundle must output public_url or alb_dns_name"
        )
    return url


def release(version_tag: str, commit_sha: Optional[str] = None, config: Optional[ReleaseConfig] = None,
            release_id: Optional[str] = None, skip_build: bool = False,
            user_tags: Optional[Dict[str, str]] = None,
            sleep: Callable[[float], None] = time.sleep) -> Dict[str, Any]:
    """
    Run the release pipeline for a version tag.

    Building -> Converging -> Verifying -> Succeeded | Failed. A failure at
    any stage halts the run; no automatic rollback is attempted, the result
    carries the manual follow-ups instead.

    Args:
        version_tag: Release tag (vX.Y.Z)
        commit_sha: Commit the tag points at; only optional with skip_build
        config: Release configuration (loaded from the environment if None)
        release_id: Optional release ID (generated if not provided)
        skip_build: Re-deploy the image already published under version_tag
        user_tags: Extra resource tags
        sleep: Sleep function used between verification probes

    Returns:
        Release result dictionary

    Raises:
        ValueError: If version_tag or commit_sha is malformed
    """
    version_tag = parse_version_tag(version_tag)
    if commit_sha:
        tags = image_tags(version_tag, commit_sha)
    elif skip_build:
        tags = [version_tag]
    else:
        raise ValueError("A commit identifier is required to build an image")
    config = config or load_config()
    release_id = release_id or new_release_id()
    workdir = terraform_source_dir(config)

    create_release_dir(release_id)
    write_release_json(release_id, version_tag, commit_sha, config.region, config.to_dict())
    run = _Run(release_id)
    outputs: Dict[str, Any] = {}

    emit_event(release_id, EventTypes.RELEASE_START, {
        "release_id": release_id,
        "version_tag": version_tag,
        "commit_sha": commit_sha,
        "region": config.region,
        "image_tags": tags,
        "skip_build": skip_build,
    })

    try:
        # Building; the backend must be initialised before its outputs can be read
        workdir = prepare_workdir(release_id, workdir, config.backend_config or None)
        repository_uri = resolve_repository_uri(config, workdir)
        if skip_build:
            images = [image_reference(repository_uri, version_tag)]
            emit_event(release_id, EventTypes.PUSH_DONE, {"images": images, "skipped": True})
        else:
            images = publish(
                release_id, repository_uri, tags, config.region,
                context=config.build_context, dockerfile=config.dockerfile
            )
        image_uri = images[0]
        run.advance(PipelineStage.CONVERGING)

        # Converging
        tfvars = to_tfvars(config, image_uri, base_tags(user_tags))
        result = converge(release_id, workdir, tfvars, initialized=True)
        outputs = result["outputs"]
        write_outputs_json(release_id, outputs)
        run.advance(PipelineStage.VERIFYING)

        # Verifying
        base_url = public_entry_point(outputs)

        def on_attempt(probe: ProbeResult) -> None:
            emit_event(release_id, EventTypes.VERIFY_ATTEMPT, {
                "attempt": probe.attempt,
                "ok": probe.ok,
                "status": probe.status,
                "error": probe.error,
            })

        verification = verify_health(
            base_url,
            attempts=config.verify_attempts,
            interval=config.verify_interval,
            timeout=config.verify_timeout,
            path=config.health_path,
            on_attempt=on_attempt,
            sleep=sleep
        )

        if not verification.success:
            emit_event(release_id, EventTypes.VERIFY_FAIL, {
                "url": verification.url,
                "attempts": verification.attempts_used,
                "error": verification.last_error,
            })
            raise VerificationError(
                f"Health check failed after {verification.attempts_used} attempts: {verification.last_error}",
                hint="Check the service's CloudWatch logs and target group health"
            )

        record_successful_release(
            release_id, version_tag, image_uri, outputs.get("task_definition_arn")
        )
        emit_event(release_id, EventTypes.VERIFY_OK, {
            "url": verification.url,
            "attempts": verification.attempts_used,
            "public_url": base_url,
        })
        run.advance(PipelineStage.SUCCEEDED)
        emit_event(release_id, EventTypes.DONE, {"public_url": base_url, "image_uri": image_uri})

        return {
            "release_id": release_id,
            "status": PipelineStage.SUCCEEDED.value,
            "version_tag": version_tag,
            "image_uri": image_uri,
            "public_url": base_url,
            "plan": result["plan"],
            "verify_attempts": verification.attempts_used,
        }

    except TagshipError as e:
        return _failed(run, version_tag, outputs, e)

    except Exception as e:
        logger.exception(f"[{release_id}] Unexpected error during {run.stage.value}")
        error = TagshipError(
            f"Unexpected error during {run.stage.value}: {type(e).__name__}: {e}",
            hint="See the traceback in the tagship log output"
        )
        return _failed(run, version_tag, outputs, error)


def _failed(run: _Run, version_tag: str, outputs: Dict[str, Any], e: TagshipError) -> Dict[str, Any]:
    """Move a run to Failed, record the ERROR event and build the failure result."""
    release_id = run.release_id
    if not is_terminal_status(run.stage):
        run.advance(PipelineStage.FAILED)
    if not e.last_lines and e.category in FAILURE_LOGS:
        e.last_lines = tail_log_file(release_id, FAILURE_LOGS[e.category])
    emit_event(release_id, EventTypes.ERROR, e.to_event())
    logger.error(f"[{release_id}] {e.category} failure: {e.reason}")

    guidance = rollback_guidance(
        failed_tag=version_tag,
        cluster=outputs.get("cluster_name"),
        service=outputs.get("service_name")
    )

    return {
        "release_id": release_id,
        "status": PipelineStage.FAILED.value,
        "version_tag": version_tag,
        "category": e.category,
        "error": e.reason,
        "hint": e.hint,
        "last_lines": e.last_lines,
        "rollback_guidance": guidance,
    }
