import logging
import os

import pytest

from finjobs.core.config import WorkerSettings, reset_settings_cache
from finjobs.core.job_queue.core import RetryPolicy
from finjobs.core.job_queue.processors import ProcessorRegistry
from finjobs.core.logging import clear_job_context


@pytest.fixture(autouse=True)
def env_isolation(monkeypatch):
    """Hide FINJOBS_* variables from the developer's shell and reset cached settings."""
    for key in list(os.environ):
        if key.startswith("FINJOBS_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings_cache()
    try:
        yield
    finally:
        reset_settings_cache()


@pytest.fixture(autouse=True)
def logging_isolation():
    """Drop root handlers installed by setup_structured_logging and clear context."""
    root = logging.getLogger()
    level = root.level
    try:
        yield
    finally:
        for handler in root.handlers[:]:
            # pytest's own capture handlers are subclasses
            if type(handler) in (logging.StreamHandler, logging.FileHandler):
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
        clear_job_context()


@pytest.fixture
def no_delay_retry():
    return RetryPolicy(delay_seconds=0.0, backoff_factor=2.0)


@pytest.fixture
def fast_worker_config():
    """Inline worker that polls, heartbeats and drains quickly."""
    return WorkerSettings(
        max_concurrent_jobs=2,
        poll_interval=0.01,
        heartbeat_interval=0.05,
        shutdown_grace=2.0,
        kill_grace=0.5,
        job_timeout=5.0,
        isolation="inline",
    )


@pytest.fixture
def echo_registry():
    registry = ProcessorRegistry()

    @registry.processor("echo")
    def echo(job):
        return {"echo": job.payload}

    return registry
