"""
Release pipeline stages and status derivation from events.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .events import EventTypes


class PipelineStage(Enum):
    """Release pipeline stages."""
    BUILDING = "building"
    CONVERGING = "converging"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


STAGE_TRANSITIONS = {
    PipelineStage.BUILDING: [PipelineStage.CONVERGING, PipelineStage.FAILED],
    PipelineStage.CONVERGING: [PipelineStage.VERIFYING, PipelineStage.FAILED],
    PipelineStage.VERIFYING: [PipelineStage.SUCCEEDED, PipelineStage.FAILED],
    PipelineStage.SUCCEEDED: [],
    PipelineStage.FAILED: [],
}

EVENT_TO_STAGE = {
    EventTypes.RELEASE_START: PipelineStage.BUILDING,
    EventTypes.BUILD_START: PipelineStage.BUILDING,
    EventTypes.BUILD_DONE: PipelineStage.BUILDING,
    EventTypes.PUSH_DONE: PipelineStage.CONVERGING,
    EventTypes.TF_PLAN: PipelineStage.CONVERGING,
    EventTypes.TF_APPLY_START: PipelineStage.CONVERGING,
    EventTypes.TF_APPLY_LINE: PipelineStage.CONVERGING,
    EventTypes.TF_APPLY_DONE: PipelineStage.VERIFYING,
    EventTypes.VERIFY_ATTEMPT: PipelineStage.VERIFYING,
    EventTypes.VERIFY_OK: PipelineStage.SUCCEEDED,
    EventTypes.DONE: PipelineStage.SUCCEEDED,
    EventTypes.VERIFY_FAIL: PipelineStage.FAILED,
    EventTypes.ERROR: PipelineStage.FAILED,
}

STAGE_MESSAGES = {
    PipelineStage.BUILDING: "Building and publishing image",
    PipelineStage.CONVERGING: "Converging infrastructure",
    PipelineStage.VERIFYING: "Verifying health endpoint",
    PipelineStage.SUCCEEDED: "Release succeeded",
    PipelineStage.FAILED: "Release failed",
}


@dataclass
class StatusInfo:
    """Current view of a release, derived from its events."""
    stage: PipelineStage
    message: str
    last_event: Optional[Dict[str, Any]] = None
    failure_category: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_hint: Optional[str] = None
    public_url: Optional[str] = None
    image_uri: Optional[str] = None
    verify_attempts: int = 0
    rolled_back: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


def is_terminal_status(stage: PipelineStage) -> bool:
    """Check if stage is terminal (no further transitions possible)."""
    return not STAGE_TRANSITIONS[stage]


def can_transition_to(current: PipelineStage, target: PipelineStage) -> bool:
    """Check if transition from current to target stage is valid."""
    return target in STAGE_TRANSITIONS.get(current, [])


class StatusDeriver:
    """Derives release status from the event log."""

    def derive_status(self, events: List[Dict[str, Any]], outputs: Optional[Dict[str, Any]] = None) -> StatusInfo:
        """Derive current status from events and terraform outputs."""
        if not events:
            return StatusInfo(stage=PipelineStage.BUILDING, message="No events found")

        stage = PipelineStage.BUILDING
        info = StatusInfo(stage=stage, message="", last_event=events[-1])

        for event in events:
            event_type = event.get("type", "")
            data = event.get("data") or {}

            if event_type == EventTypes.PUSH_DONE and data.get("images"):
                info.image_uri = data["images"][0]
            elif event_type == EventTypes.RELEASE_START and data.get("image_uri"):
                info.image_uri = data["image_uri"]
            elif event_type == EventTypes.VERIFY_ATTEMPT:
                info.verify_attempts += 1
            elif event_type in (EventTypes.VERIFY_OK, EventTypes.DONE) and data.get("public_url"):
                info.public_url = data["public_url"]
            elif event_type == EventTypes.ROLLBACK_DONE:
                info.rolled_back = True
            elif event_type in (EventTypes.ERROR, EventTypes.VERIFY_FAIL):
                info.failure_category = data.get("category", info.failure_category)
                info.failure_reason = data.get("reason", info.failure_reason)
                info.failure_hint = data.get("hint", info.failure_hint)

            # Terminal stages stick; later events can't move a finished run
            if event_type in EVENT_TO_STAGE and not is_terminal_status(stage):
                stage = EVENT_TO_STAGE[event_type]

        if outputs and not info.public_url:
            info.public_url = outputs.get("public_url")

        info.stage = stage
        info.message = STAGE_MESSAGES[stage]
        if stage == PipelineStage.FAILED and info.failure_reason:
            info.message = f"{info.message}: {info.failure_reason}"

        return info
