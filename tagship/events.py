"""
Event logging utilities for NDJSON format.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .state import get_release_dir


# Predefined event types for consistency
class EventTypes:
    RELEASE_START = "RELEASE_START"
    BUILD_START = "BUILD_START"
    BUILD_DONE = "BUILD_DONE"
    PUSH_DONE = "PUSH_DONE"
    TF_INIT = "TF_INIT"
    TF_PLAN = "TF_PLAN"
    TF_APPLY_START = "TF_APPLY_START"
    TF_APPLY_LINE = "TF_APPLY_LINE"
    TF_APPLY_DONE = "TF_APPLY_DONE"
    VERIFY_ATTEMPT = "VERIFY_ATTEMPT"
    VERIFY_OK = "VERIFY_OK"
    VERIFY_FAIL = "VERIFY_FAIL"
    DONE = "DONE"
    ERROR = "ERROR"
    ROLLBACK_START = "ROLLBACK_START"
    ROLLBACK_DONE = "ROLLBACK_DONE"


def emit_event(release_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Emit an event to the release's logs.ndjson file.

    Args:
        release_id: Release ID
        event_type: Event type (e.g., "BUILD_START", "TF_PLAN", "ERROR")
        data: Event data
    """
    logs_file = get_release_dir(release_id) / "logs.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(logs_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()


def _parse_line(line: str) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line:
        return None
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return None  # Skip malformed lines


def read_events(release_id: str) -> List[Dict[str, Any]]:
    """
    Read all events from a release's logs.ndjson file.
    """
    logs_file = get_release_dir(release_id) / "logs.ndjson"

    if not logs_file.exists():
        return []

    events = []
    with open(logs_file, "r") as f:
        for line in f:
            event = _parse_line(line)
            if event is not None:
                events.append(event)

    return events


def tail_events(release_id: str, follow: bool = False, poll_interval: float = 0.5) -> Iterator[Dict[str, Any]]:
    """
    Generator that yields events as they're written.

    Args:
        release_id: Release ID
        follow: If True, keep watching for new events until a terminal event
        poll_interval: Seconds between size checks while following

    Yields:
        Event dictionaries
    """
    logs_file = get_release_dir(release_id) / "logs.ndjson"

    if not logs_file.exists():
        return

    position = 0
    while True:
        with open(logs_file, "r") as f:
            f.seek(position)
            while True:
                line = f.readline()
                # Partial line: writer hasn't flushed the newline yet
                if not line or not line.endswith("\n"):
                    break
                position = f.tell()
                event = _parse_line(line)
                if event is None:
                    continue
                yield event
                if follow and event.get("type") in (EventTypes.DONE, EventTypes.ERROR):
                    return

        if not follow:
            return

        time.sleep(poll_interval)
