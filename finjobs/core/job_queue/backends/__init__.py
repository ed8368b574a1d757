"""Job backend implementations and the settings-driven factory."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from finjobs.core.config import Settings
from finjobs.core.errors import ConfigurationError
from finjobs.core.job_queue.backends.database import (
    PostgresJobBackend,
    SQLiteJobBackend,
    create_database_backend,
)
from finjobs.core.job_queue.backends.memory import InMemoryJobBackend
from finjobs.core.job_queue.backends.mqtt import MqttJobBackend
from finjobs.core.job_queue.backends.rabbitmq import RabbitMQJobBackend
from finjobs.core.job_queue.backends.redis_queue import RedisJobBackend
from finjobs.core.job_queue.core import JobBackend, RetryPolicy

logger = logging.getLogger(__name__)


def _common_kwargs(settings: Settings) -> Dict[str, Any]:
    return {
        "retry_policy": RetryPolicy(
            delay_seconds=settings.queue.retry_delay,
            backoff_factor=settings.queue.retry_backoff,
            max_attempts=settings.queue.max_attempts,
        ),
        "stale_after": settings.queue.stale_after,
        "sweep_interval": settings.queue.sweep_interval,
    }


def _database(settings: Settings) -> JobBackend:
    db = settings.database
    return create_database_backend(
        db.url,
        busy_timeout=db.busy_timeout,
        min_size=db.pool_min_size,
        max_size=db.pool_max_size,
        **_common_kwargs(settings),
    )


def _redis(settings: Settings) -> JobBackend:
    return RedisJobBackend(
        url=settings.redis.url,
        key_prefix=settings.redis.key_prefix,
        **_common_kwargs(settings),
    )


def _rabbitmq(settings: Settings) -> JobBackend:
    return RabbitMQJobBackend(**settings.rabbitmq.model_dump(), **_common_kwargs(settings))


def _mqtt(settings: Settings) -> JobBackend:
    return MqttJobBackend(**settings.mqtt.model_dump(), **_common_kwargs(settings))


def _memory(settings: Settings) -> JobBackend:
    return InMemoryJobBackend(**_common_kwargs(settings))


BACKEND_FACTORIES: Dict[str, Callable[[Settings], JobBackend]] = {
    "database": _database,
    "redis": _redis,
    "rabbitmq": _rabbitmq,
    "mqtt": _mqtt,
    "memory": _memory,
}


def create_backend(settings: Settings) -> JobBackend:
    """Build the (unconnected) backend named by ``queue.backend``."""
    name = settings.queue.backend
    factory = BACKEND_FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown queue backend: {name}")
    backend = factory(settings)
    logger.debug(f"Created {type(backend).__name__} for backend {name!r}")
    return backend


__all__ = [
    "BACKEND_FACTORIES",
    "InMemoryJobBackend",
    "MqttJobBackend",
    "PostgresJobBackend",
    "RabbitMQJobBackend",
    "RedisJobBackend",
    "SQLiteJobBackend",
    "create_backend",
]
