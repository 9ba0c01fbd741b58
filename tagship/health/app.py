"""FastAPI application exposing the liveness contract."""

import os
from typing import Dict, Optional

from fastapi import FastAPI
from pydantic import BaseModel
import uvicorn

from .. import __version__

# Asserted by the load balancer target group and by the deployment verifier
HEALTH_PATH = "/health"
HEALTH_BODY: Dict[str, str] = {"status": "ok"}


class HealthResponse(BaseModel):
    status: str


app = FastAPI(
    title="Tagship service",
    description="Container health endpoint",
    version=__version__
)


@app.api_route(HEALTH_PATH, methods=["GET", "HEAD"], response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(**HEALTH_BODY)


def run(host: str = "0.0.0.0", port: Optional[int] = None) -> None:
    """Serve the application with uvicorn."""
    if port is None:
        port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
