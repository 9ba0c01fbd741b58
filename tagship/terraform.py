"""
Terraform wrapper functions for infrastructure convergence.

Terraform runs inside the bundle directory so the configured backend keeps a
single state across releases; each release only contributes its own
``terraform.tfvars.json`` and log files.
"""

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConvergenceError
from .events import EventTypes, emit_event
from .state import get_release_dir

logger = logging.getLogger(__name__)

PLAN_SUMMARY_RE = re.compile(r"Plan: (\d+) to add, (\d+) to change, (\d+) to destroy")


def _terraform_env() -> Dict[str, str]:
    env = os.environ.copy()
    env["TF_IN_AUTOMATION"] = "1"
    env["TF_INPUT"] = "0"
    return env


def _run_terraform_command(release_id: str, workdir: Path, command: List[str]) -> Tuple[int, List[str]]:
    """
    Run a terraform command, appending its output to terraform.log.

    Apply output is additionally streamed as TF_APPLY_LINE events.

    Args:
        release_id: Release ID
        workdir: Terraform bundle directory
        command: Terraform command to run

    Returns:
        Tuple of (return code, output lines)

    Raises:
        ConvergenceError: If terraform can't be started
    """
    terraform_log = get_release_dir(release_id) / "terraform.log"

    try:
        process = subprocess.Popen(
            command,
            cwd=workdir,
            env=_terraform_env(),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1
        )
    except OSError as e:
        raise ConvergenceError(
            f"Failed to run terraform: {e}",
            hint="Check terraform installation and permissions"
        ) from e

    output_lines = []
    with open(terraform_log, "a") as log_file:
        log_file.write(f"=== {' '.join(command)} ===\n")

        for line in process.stdout:
            line = line.rstrip()
            output_lines.append(line)
            log_file.write(line + "\n")
            log_file.flush()

            if "apply" in command and line.strip():
                emit_event(release_id, EventTypes.TF_APPLY_LINE, {"line": line})

    process.wait()
    return process.returncode, output_lines


def _failure(command: List[str], output_lines: List[str]) -> ConvergenceError:
    return ConvergenceError(
        f"Terraform command failed: {' '.join(command)}",
        hint="Check terraform.log for details",
        last_lines=output_lines[-40:]
    )


def write_tfvars(release_id: str, tfvars: Dict[str, Any]) -> Path:
    """
    Write terraform.tfvars.json into the release directory.

    Returns:
        Path of the written file
    """
    tfvars_file = get_release_dir(release_id) / "terraform.tfvars.json"

    with open(tfvars_file, "w") as f:
        json.dump(tfvars, f, indent=2)

    return tfvars_file


def tf_init(release_id: str, workdir: Path, backend_config: Optional[str] = None) -> None:
    """
    Run terraform init.

    Args:
        release_id: Release ID
        workdir: Terraform bundle directory
        backend_config: Optional backend configuration file

    Raises:
        ConvergenceError: If init fails
    """
    command = ["terraform", "init", "-no-color"]
    if backend_config:
        command.append(f"-backend-config={backend_config}")

    returncode, output = _run_terraform_command(release_id, workdir, command)
    if returncode != 0:
        raise _failure(command, output)

    emit_event(release_id, EventTypes.TF_INIT, {"ok": True})


def summarize_plan(output_lines: List[str]) -> Dict[str, int]:
    """
    Count planned resource changes from plan output.
    """
    for line in reversed(output_lines):
        match = PLAN_SUMMARY_RE.search(line)
        if match:
            adds, changes, destroys = (int(n) for n in match.groups())
            return {"adds": adds, "changes": changes, "destroys": destroys}

    output = "\n".join(output_lines)
    return {
        "adds": output.count("will be created"),
        "changes": output.count("will be updated"),
        "destroys": output.count("will be destroyed"),
    }


def tf_plan(release_id: str, workdir: Path, var_file: Path) -> Dict[str, Any]:
    """
    Run terraform plan with -detailed-exitcode.

    An unchanged configuration yields ``changes_pending=False``.

    Returns:
        Plan summary with adds/changes/destroys and changes_pending

    Raises:
        ConvergenceError: If plan fails
    """
    command = [
        "terraform", "plan", "-no-color", "-detailed-exitcode",
        f"-var-file={var_file}", "-out=tfplan"
    ]
    returncode, output = _run_terraform_command(release_id, workdir, command)

    # 0 = no changes, 2 = changes present, anything else is an error
    if returncode not in (0, 2):
        raise _failure(command, output)

    summary = summarize_plan(output)
    summary["changes_pending"] = returncode == 2
    summary["ok"] = True

    emit_event(release_id, EventTypes.TF_PLAN, summary)
    return summary


def tf_apply(release_id: str, workdir: Path) -> None:
    """
    Apply the saved plan.

    Raises:
        ConvergenceError: If apply fails
    """
    emit_event(release_id, EventTypes.TF_APPLY_START, {})

    command = ["terraform", "apply", "-no-color", "-auto-approve", "tfplan"]
    returncode, output = _run_terraform_command(release_id, workdir, command)
    if returncode != 0:
        raise _failure(command, output)

    emit_event(release_id, EventTypes.TF_APPLY_DONE, {"ok": True})


def get_terraform_outputs(workdir: Path) -> Dict[str, Any]:
    """
    Get terraform outputs as a flat name -> value mapping.

    Args:
        workdir: Terraform bundle directory

    Returns:
        Dictionary of terraform outputs, empty if none are available
    """
    try:
        result = subprocess.run(
            ["terraform", "output", "-json"],
            cwd=workdir,
            env=_terraform_env(),
            capture_output=True,
            text=True,
            check=True
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning(f"Failed to read terraform outputs: {getattr(e, 'stderr', e)}")
        return {}

    try:
        raw = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse terraform outputs: {e}")
        return {}

    return {
        name: entry.get("value") if isinstance(entry, dict) else entry
        for name, entry in raw.items()
    }


def prepare_workdir(release_id: str, workdir: Path, backend_config: Optional[str] = None) -> Path:
    """
    Check the bundle directory and initialise its backend.

    Outputs of earlier releases are only readable once init has configured
    the remote backend, so this runs before anything reads them.

    Returns:
        The bundle directory as a Path

    Raises:
        ConvergenceError: If the directory is missing or init fails
    """
    workdir = Path(workdir)
    if not workdir.is_dir():
        raise ConvergenceError(
            f"Terraform directory not found: {workdir}",
            hint="Set TAGSHIP_TERRAFORM_DIR to the infra bundle"
        )

    tf_init(release_id, workdir, backend_config)
    return workdir


def converge(release_id: str, workdir: Path, tfvars: Dict[str, Any],
             backend_config: Optional[str] = None, initialized: bool = False) -> Dict[str, Any]:
    """
    Converge live infrastructure onto the bundle plus ``tfvars``.

    Runs init (unless ``initialized``), plan and, when the plan has changes,
    apply.

    Returns:
        Dict with the plan summary under "plan" and outputs under "outputs"

    Raises:
        ConvergenceError: If any step fails
    """
    workdir = Path(workdir)
    if not initialized:
        prepare_workdir(release_id, workdir, backend_config)

    var_file = write_tfvars(release_id, tfvars)
    plan = tf_plan(release_id, workdir, var_file)

    if plan["changes_pending"]:
        tf_apply(release_id, workdir)
    else:
        logger.info("No infrastructure changes, skipping apply")
        emit_event(release_id, EventTypes.TF_APPLY_DONE, {"ok": True, "skipped": True})

    outputs = get_terraform_outputs(workdir)
    return {"plan": plan, "outputs": outputs}
