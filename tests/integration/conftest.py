import pytest

from finjobs.core.job_queue.processors import ProcessorRegistry

from job_helpers import sleepy


@pytest.fixture
def sleepy_registry():
    registry = ProcessorRegistry()
    registry.register_function("sleepy", sleepy)
    return registry
