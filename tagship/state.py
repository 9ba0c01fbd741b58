"""
State management for releases.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .ids import is_valid_release_id


def get_tagship_home() -> Path:
    """
    Get the Tagship home directory.

    Returns:
        Path: Tagship home directory
    """
    return Path(os.environ.get("TAGSHIP_HOME", ".tagship")).resolve()


def get_release_dir(release_id: str) -> Path:
    """
    Get the directory for a specific release.

    Args:
        release_id: Release ID

    Returns:
        Path: Release directory

    Raises:
        ValueError: If release ID is invalid
    """
    if not is_valid_release_id(release_id):
        raise ValueError(f"Invalid release ID: {release_id}")

    return get_tagship_home() / release_id


def create_release_dir(release_id: str) -> Path:
    """
    Create release directory and return its path.
    """
    release_dir = get_release_dir(release_id)
    release_dir.mkdir(parents=True, exist_ok=True)
    return release_dir


def write_release_json(release_id: str, version_tag: str, commit_sha: str,
                       region: str, config: Dict[str, Any]) -> None:
    """
    Write release metadata to release.json.

    Args:
        release_id: Release ID
        version_tag: Version tag that triggered the release
        commit_sha: Commit identifier the tag points at
        region: AWS region
        config: Snapshot of the release configuration
    """
    release_data = {
        "release_id": release_id,
        "version_tag": version_tag,
        "commit_sha": commit_sha,
        "region": region,
        "config": config,
        "created_at": datetime.now().isoformat()
    }

    with open(get_release_dir(release_id) / "release.json", "w") as f:
        json.dump(release_data, f, indent=2)


def read_release_json(release_id: str) -> Dict[str, Any]:
    """
    Read release metadata from release.json.

    Raises:
        FileNotFoundError: If release.json doesn't exist
    """
    release_file = get_release_dir(release_id) / "release.json"

    if not release_file.exists():
        raise FileNotFoundError(f"Release {release_id} not found")

    with open(release_file, "r") as f:
        return json.load(f)


def write_outputs_json(release_id: str, outputs: Dict[str, Any]) -> None:
    """
    Write Terraform outputs to outputs.json.
    """
    with open(get_release_dir(release_id) / "outputs.json", "w") as f:
        json.dump(outputs, f, indent=2)


def read_outputs_json(release_id: str) -> Optional[Dict[str, Any]]:
    """
    Read Terraform outputs from outputs.json.

    Returns:
        Dict: Terraform outputs or None if not found
    """
    outputs_file = get_release_dir(release_id) / "outputs.json"

    if not outputs_file.exists():
        return None

    with open(outputs_file, "r") as f:
        return json.load(f)


def tail_log_file(release_id: str, name: str, lines: int = 40) -> List[str]:
    """
    Return the last lines of one of the release's log files.

    Args:
        release_id: Release ID
        name: Log file name, e.g. "terraform.log" or "build.log"
        lines: Number of lines to return

    Returns:
        List of lines, empty if the file doesn't exist
    """
    log_file = get_release_dir(release_id) / name
    if not log_file.exists():
        return []

    with open(log_file, "r") as f:
        content = f.read().splitlines()

    return content[-lines:]


def list_releases() -> List[str]:
    """
    List all release IDs, most recent first.
    """
    home = get_tagship_home()

    if not home.exists():
        return []

    releases = [
        item.name for item in home.iterdir()
        if item.is_dir() and is_valid_release_id(item.name)
    ]

    return sorted(releases, reverse=True)


def release_exists(release_id: str) -> bool:
    """
    Check if a release exists.
    """
    release_dir = get_release_dir(release_id)
    return release_dir.exists() and (release_dir / "release.json").exists()


def _history_file() -> Path:
    return get_tagship_home() / "history.json"


def read_history() -> List[Dict[str, Any]]:
    """
    Read the ledger of releases that passed verification, oldest first.
    """
    history_file = _history_file()

    if not history_file.exists():
        return []

    try:
        with open(history_file, "r") as f:
            return json.load(f)
    except json.JSONDecodeError:
        return []


def record_successful_release(release_id: str, version_tag: str, image_uri: str,
                              task_definition_arn: Optional[str] = None) -> Dict[str, Any]:
    """
    Append a verified release to the history ledger.

    Args:
        release_id: Release ID
        version_tag: Version tag of the release
        image_uri: Fully qualified image reference that was deployed
        task_definition_arn: Task definition revision the service ran

    Returns:
        The recorded entry
    """
    entry = {
        "release_id": release_id,
        "version_tag": version_tag,
        "image_uri": image_uri,
        "task_definition_arn": task_definition_arn,
        "recorded_at": datetime.now().isoformat()
    }

    history = read_history()
    history.append(entry)

    home = get_tagship_home()
    home.mkdir(parents=True, exist_ok=True)
    with open(_history_file(), "w") as f:
        json.dump(history, f, indent=2)

    return entry
