"""
Version tag, image tag and resource tag utilities.
"""

import re
from typing import Dict, List, Optional

VERSION_TAG_RE = re.compile(r"^v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")
SHORT_SHA_LENGTH = 7
LATEST_TAG = "latest"


def parse_version_tag(tag: str) -> str:
    """
    Normalise a release tag of the form vX.Y.Z.

    Accepts the bare tag or a full ref such as ``refs/tags/v1.2.3``.

    Args:
        tag: Tag name or ref

    Returns:
        The bare version tag

    Raises:
        ValueError: If the tag is not a vX.Y.Z version tag
    """
    name = tag.strip()
    if name.startswith("refs/tags/"):
        name = name[len("refs/tags/"):]

    if not VERSION_TAG_RE.match(name):
        raise ValueError(f"Invalid version tag: {tag}. Expected 'vX.Y.Z'")

    return name


def short_sha(commit_sha: str) -> str:
    """Short commit identifier used as an image tag."""
    commit_sha = commit_sha.strip()
    if not commit_sha or not re.fullmatch(r"[0-9a-fA-F]+", commit_sha):
        raise ValueError(f"Invalid commit identifier: {commit_sha!r}")
    return commit_sha[:SHORT_SHA_LENGTH].lower()


def image_tags(version_tag: str, commit_sha: str) -> List[str]:
    """
    The three registry tags an image is published under, in push order.

    Args:
        version_tag: Release version tag (vX.Y.Z)
        commit_sha: Commit identifier

    Returns:
        [version tag, short commit identifier, "latest"]
    """
    return [parse_version_tag(version_tag), short_sha(commit_sha), LATEST_TAG]


def image_reference(repository_uri: str, tag: str) -> str:
    """Fully qualified image reference, ``<repository>:<tag>``."""
    return f"{repository_uri.rstrip('/')}:{tag}"


def base_tags(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base AWS resource tags.

    Only stable values belong here: the tags feed the provider's
    ``default_tags``, so a per-run value would make every plan non-empty.
    The release ID and timestamps live in ``release.json`` instead.

    Args:
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "project": "tagship",
        "managed_by": "terraform",
    }

    if extra:
        tags.update(extra)

    return tags


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags
