"""
Post-deployment verification against the public health endpoint.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from .health.app import HEALTH_BODY, HEALTH_PATH

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 10
DEFAULT_INTERVAL = 30.0
DEFAULT_TIMEOUT = 10.0


@dataclass
class ProbeResult:
    """Outcome of a single health probe."""
    attempt: int
    ok: bool
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class VerificationResult:
    """Outcome of a verification run."""
    success: bool
    url: str
    attempts_used: int
    last_error: Optional[str] = None
    probes: List[ProbeResult] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.success:
            return f"{self.url} healthy after {self.attempts_used} attempt(s)"
        return f"{self.url} not healthy after {self.attempts_used} attempt(s): {self.last_error}"


def health_url(base_url: str, path: str = HEALTH_PATH) -> str:
    """Join the public entry point and the health path."""
    base_url = base_url.strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        base_url = f"http://{base_url}"
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{base_url}{path}"


def probe(url: str, attempt: int = 1, timeout: float = DEFAULT_TIMEOUT,
          expected_body: Dict[str, Any] = HEALTH_BODY,
          session: Optional[requests.Session] = None) -> ProbeResult:
    """
    Issue one request and check it against the health contract.

    A probe conforms only for HTTP 200 with a JSON body equal to
    ``expected_body``. Anything else, including connection errors and
    timeouts, is non-conforming.

    Args:
        url: Full health URL
        attempt: Attempt number, recorded in the result
        timeout: Request timeout in seconds
        expected_body: JSON body the endpoint must return
        session: Optional requests session

    Returns:
        ProbeResult
    """
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        return ProbeResult(attempt=attempt, ok=False, error=f"Request failed: {e}")

    if response.status_code != 200:
        return ProbeResult(
            attempt=attempt, ok=False, status=response.status_code,
            error=f"Expected status 200, got {response.status_code}"
        )

    try:
        body = response.json()
    except ValueError:
        return ProbeResult(
            attempt=attempt, ok=False, status=response.status_code,
            error="Response body is not valid JSON"
        )

    if body != expected_body:
        return ProbeResult(
            attempt=attempt, ok=False, status=response.status_code,
            error=f"Unexpected body {body!r}, expected {expected_body!r}"
        )

    return ProbeResult(attempt=attempt, ok=True, status=response.status_code)


def verify_health(base_url: str, attempts: int = DEFAULT_ATTEMPTS, interval: float = DEFAULT_INTERVAL,
                  timeout: float = DEFAULT_TIMEOUT, path: str = HEALTH_PATH,
                  on_attempt: Optional[Callable[[ProbeResult], None]] = None,
                  sleep: Callable[[float], None] = time.sleep,
                  session: Optional[requests.Session] = None) -> VerificationResult:
    """
    Poll the health endpoint until it conforms or the retry budget runs out.

    Succeeds if and only if at least one probe conforms within ``attempts``
    probes. Probes are spaced ``interval`` seconds apart; there is no sleep
    after the final probe.

    Args:
        base_url: Public entry point, e.g. the load balancer DNS name
        attempts: Retry budget (number of probes)
        interval: Seconds between probes
        timeout: Per-request timeout in seconds
        path: Health path
        on_attempt: Callback invoked with every probe result
        sleep: Sleep function
        session: Optional requests session

    Returns:
        VerificationResult
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    url = health_url(base_url, path)
    logger.info(f"Verifying {url} (up to {attempts} attempts, {interval}s apart)")

    probes: List[ProbeResult] = []
    for attempt in range(1, attempts + 1):
        result = probe(url, attempt=attempt, timeout=timeout, session=session)
        probes.append(result)

        if on_attempt:
            on_attempt(result)

        if result.ok:
            logger.info(f"✅ {url} healthy on attempt {attempt}")
            return VerificationResult(success=True, url=url, attempts_used=attempt, probes=probes)

        if attempt < attempts:
            logger.debug(f"Attempt {attempt} failed ({result.error}), retrying in {interval}s...")
            sleep(interval)

    last_error = probes[-1].error
    logger.error(f"❌ {url} failed verification: {last_error}")
    return VerificationResult(
        success=False, url=url, attempts_used=attempts, last_error=last_error, probes=probes
    )
