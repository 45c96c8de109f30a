"""Prometheus metrics module with optional multiprocess support."""

import os
import shutil
from pathlib import Path

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from starlette.responses import Response


def setup_metrics(multiproc_dir: str | None) -> None:
    """Initialize the multiprocess metrics directory when one is configured.

    Must be called before any metrics are created.
    Cleans up stale files from previous runs.
    """
    if not multiproc_dir:
        return
    path = Path(multiproc_dir)
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
    os.environ["PROMETHEUS_MULTIPROC_DIR"] = str(path)


def get_metrics_response() -> Response:
    """Generate Prometheus metrics in text format.

    Aggregates across worker processes when running in multiprocess mode.
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
    else:
        registry = REGISTRY
    return Response(
        content=generate_latest(registry),
        media_type=CONTENT_TYPE_LATEST,
    )
