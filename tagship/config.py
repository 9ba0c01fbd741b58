"""
Release configuration.

Sizing, region and verifier settings come from ``TAGSHIP_*`` environment
variables and CLI overrides. Values are coerced to their types; apart from
the verifier budget they are not range checked, the ECS control plane rejects
sizes it cannot run.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class ReleaseConfig:
    """Externally supplied values consumed by convergence and verification."""
    region: str = "us-east-1"
    app_name: str = "tagship-app"
    desired_count: int = 2
    cpu: int = 256             # Fargate CPU units
    memory: int = 512          # MiB
    container_port: int = 8080
    health_path: str = "/health"
    verify_attempts: int = 10
    verify_interval: float = 30.0
    verify_timeout: float = 10.0
    terraform_dir: str = "infra"
    backend_config: str = ""
    repository_uri: str = ""   # falls back to the ecr_repository_url output
    build_context: str = "."
    dockerfile: str = "Dockerfile"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(value: Any, target: Any) -> Any:
    if value is None or isinstance(value, target):
        return value
    if target is int:
        return int(value)
    if target is float:
        return float(value)
    return str(value)


def load_config(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> ReleaseConfig:
    """
    Build a ReleaseConfig from the environment and explicit overrides.

    Each field ``foo_bar`` is read from ``TAGSHIP_FOO_BAR``; overrides whose
    value is None are ignored so unset CLI options fall through.

    Args:
        overrides: Field values that take precedence over the environment
        environ: Environment mapping (defaults to os.environ)

    Returns:
        ReleaseConfig

    Raises:
        ValueError: If a value can't be coerced, an override key is unknown or
            the verifier budget is out of range
    """
    environ = os.environ if environ is None else environ
    overrides = overrides or {}

    known = [f.name for f in fields(ReleaseConfig)]
    unknown = set(overrides) - set(known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    for name in known:
        env_value = environ.get(f"TAGSHIP_{name.upper()}")
        if env_value is not None and env_value != "":
            values[name] = env_value
        if overrides.get(name) is not None:
            values[name] = overrides[name]

    kwargs = {}
    for name, value in values.items():
        target = type(getattr(ReleaseConfig, name))
        try:
            kwargs[name] = _coerce(value, target)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for {name}: {value!r}") from None

    config = ReleaseConfig(**kwargs)
    if config.verify_attempts < 1:
        raise ValueError(f"verify_attempts must be at least 1, got {config.verify_attempts}")
    if config.verify_interval < 0 or config.verify_timeout <= 0:
        raise ValueError("verify_interval must be >= 0 and verify_timeout > 0")

    return config


def to_tfvars(config: ReleaseConfig, image_uri: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Map a ReleaseConfig onto the Terraform variables of the infra bundle.

    Args:
        config: Release configuration
        image_uri: Image reference the service should run
        tags: Resource tags

    Returns:
        Dictionary suitable for terraform.tfvars.json
    """
    tfvars = {
        "region": config.region,
        "app_name": config.app_name,
        "image_uri": image_uri,
        "desired_count": config.desired_count,
        "task_cpu": config.cpu,
        "task_memory": config.memory,
        "container_port": config.container_port,
        "health_check_path": config.health_path,
    }
    if tags:
        tfvars["tags"] = tags
    return tfvars


def terraform_source_dir(config: ReleaseConfig) -> Path:
    """Directory holding the Terraform bundle."""
    return Path(config.terraform_dir).resolve()
