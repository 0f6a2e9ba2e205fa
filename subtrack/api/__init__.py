"""Subtrack HTTP API."""

from __future__ import annotations


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    from subtrack.config import API_HOST, API_PORT

    uvicorn.run("subtrack.api.app:app", host=API_HOST, port=API_PORT)
