"""Job processor contract and registry.

Processors execute one job type and never talk to the backend; the worker
owns every claim/complete/fail call.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional

from finjobs.core.job_queue.core import Job

logger = logging.getLogger(__name__)


class JobProcessor(ABC):
    """Executes jobs of a single type.

    ``execute`` returns a JSON-serializable result or raises
    ``TransientJobError`` / ``PermanentJobError``. Any other exception is
    treated as retryable.
    """

    job_type: str = ""

    @abstractmethod
    async def execute(self, job: Job) -> Any:
        pass


class FunctionProcessor(JobProcessor):
    """Processor wrapping a plain or coroutine function taking the job."""

    def __init__(self, job_type: str, func: Callable[[Job], Any]):
        self.job_type = job_type
        self._func = func

    async def execute(self, job: Job) -> Any:
        if asyncio.iscoroutinefunction(self._func):
            return await self._func(job)
        return self._func(job)

    def __repr__(self) -> str:
        return f"FunctionProcessor({self.job_type!r}, {getattr(self._func, '__name__', self._func)!r})"


class ProcessorRegistry:
    """Static map from job type to processor, filled at worker startup."""

    def __init__(self) -> None:
        self._processors: Dict[str, JobProcessor] = {}

    def register(self, processor: JobProcessor, job_type: Optional[str] = None) -> None:
        name = job_type or processor.job_type
        if not name:
            raise ValueError(f"Processor {processor!r} has no job_type")
        if name in self._processors:
            logger.warning(f"Replacing processor for job type {name}")
        self._processors[name] = processor
        logger.debug(f"Registered processor: {name}")

    def register_function(self, job_type: str, func: Callable[[Job], Any]) -> None:
        self.register(FunctionProcessor(job_type, func))

    def processor(self, job_type: str) -> Callable[[Callable[[Job], Any]], Callable[[Job], Any]]:
        """Decorator registering a function as the processor for ``job_type``."""

        def decorator(func: Callable[[Job], Any]) -> Callable[[Job], Any]:
            self.register_function(job_type, func)
            return func

        return decorator

    def get(self, job_type: str) -> Optional[JobProcessor]:
        return self._processors.get(job_type)

    @property
    def job_types(self) -> List[str]:
        return sorted(self._processors)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._processors

    def __iter__(self) -> Iterator[str]:
        return iter(self.job_types)

    def __len__(self) -> int:
        return len(self._processors)
