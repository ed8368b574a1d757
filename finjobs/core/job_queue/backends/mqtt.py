"""MQTT job backend (best-effort, at-least-once).

MQTT has no atomic claim primitive. This backend approximates one:

- jobs are published to ``<prefix>/jobs/submit/<type>`` and consumed through
  a shared subscription (``$share/<group>/...``), so the broker hands each
  delivery to a single worker;
- each submission is also retained on ``<prefix>/jobs/pending/<type>/<id>``
  until claimed. Brokers do not queue for shared groups with no session, so
  workers that subscribe later pick the backlog up from these records;
- the claimant publishes a retained marker on ``<prefix>/claims/<job_id>``
  carrying the full record; peers drop deliveries already claimed by a
  live worker and republish claims left behind by dead ones.

QoS 1 redelivery or a sweep racing a slow heartbeat can still run a job
twice. Processors used with this backend must be idempotent.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import ssl
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from finjobs.core.errors import BackendError, ClaimError, ConfigurationError, JobNotFoundError
from finjobs.core.job_queue.core import (
    Job,
    JobBackend,
    JobStatus,
    QueueStats,
    WorkerInfo,
    apply_failure,
    utcnow,
)

logger = logging.getLogger(__name__)


class MqttJobBackend(JobBackend):
    """MQTT v5 backend with retained claim markers."""

    name = "mqtt"
    connection_bound_claims = True

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        topic_prefix: str = "finjobs",
        qos: int = 1,
        share_group: str = "finjobs-workers",
        keepalive: int = 60,
        tls: bool = False,
        reconnect_delay: float = 5.0,
        client: Any = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.prefix = topic_prefix.rstrip("/")
        self.qos = qos
        self.share_group = share_group
        self.keepalive = keepalive
        self.tls = tls
        self.reconnect_delay = reconnect_delay
        self.client_id = f"finjobs-{secrets.token_hex(6)}"

        self._client: Any = client
        self._runner: Optional[asyncio.Task] = None
        self._injected = client is not None
        self._connected: Optional[asyncio.Event] = None
        self._stopping = False
        self._subscribed_types: Set[str] = set()

        self._inbox: Dict[str, Job] = {}  # Delivered, not yet claimed
        self._claims: Dict[str, Tuple[Job, str]] = {}  # Held by this process
        self._claim_markers: Dict[str, Dict[str, Any]] = {}  # Retained markers seen
        self._jobs: Dict[str, Job] = {}
        self._fleet: Dict[str, WorkerInfo] = {}
        self._fleet_clients: Dict[str, str] = {}  # worker id -> client id
        self._local_workers: Set[str] = set()

    # Topics

    def topic(self, *parts: str) -> str:
        return "/".join((self.prefix, *parts))

    def submit_topic(self, job_type: str) -> str:
        return self.topic("jobs", "submit", job_type)

    def pending_topic(self, job_type: str, job_id: str) -> str:
        return self.topic("jobs", "pending", job_type, job_id)

    def claim_topic(self, job_id: str) -> str:
        return self.topic("claims", job_id)

    def _base_subscriptions(self) -> List[str]:
        return [
            self.topic("claims", "+"),
            self.topic("jobs", "completed"),
            self.topic("jobs", "failed"),
            self.topic("workers", "+", "+"),
        ]

    def _shared(self, topic: str) -> str:
        return f"$share/{self.share_group}/{topic}"

    # Connection

    async def connect(self) -> None:
        logger.warning(
            "MQTT job backend is best-effort at-least-once; jobs requiring strict "
            "single delivery should use the database, redis or rabbitmq backend"
        )
        if self._injected:
            for topic in self._base_subscriptions():
                await self._client.subscribe(topic, qos=self.qos)
            return
        if self._runner is not None:
            return
        try:
            import aiomqtt
        except ImportError as e:
            raise ConfigurationError("aiomqtt package not installed") from e

        client_kwargs = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
            "identifier": self.client_id,
            "keepalive": self.keepalive,
            "protocol": aiomqtt.ProtocolVersion.V5,
            "tls_context": ssl.create_default_context() if self.tls else None,
            "will": aiomqtt.Will(
                topic=self.topic("workers", "status", self.client_id),
                payload=json.dumps({"client_id": self.client_id, "status": "offline"}),
                qos=self.qos,
                retain=True,
            ),
        }
        client_kwargs = {k: v for k, v in client_kwargs.items() if v is not None}
        self._client = aiomqtt.Client(**client_kwargs)
        self._connected = asyncio.Event()
        self._runner = asyncio.create_task(self._run(aiomqtt.MqttError))
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.keepalive)
        except asyncio.TimeoutError as e:
            await self.close()
            raise BackendError(f"MQTT broker {self.host}:{self.port} unreachable") from e
        logger.info(f"Connected to MQTT broker {self.host}:{self.port} as {self.client_id}")

    async def _run(self, mqtt_error: type) -> None:
        while not self._stopping:
            try:
                async with self._client:
                    for topic in self._base_subscriptions():
                        await self._client.subscribe(topic, qos=self.qos)
                    for job_type in self._subscribed_types:
                        await self._subscribe_type(job_type)
                    self._connected.set()
                    async for message in self._client.messages:
                        try:
                            self.handle_message(str(message.topic), message.payload, bool(message.retain))
                        except (ValueError, KeyError, TypeError):
                            logger.exception(f"Malformed MQTT message on {message.topic}")
            except mqtt_error as e:
                self._connected.clear()
                if self._stopping:
                    break
                logger.warning(f"MQTT connection lost ({e}); reconnecting in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)

    async def close(self) -> None:
        self._stopping = True
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
            self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise BackendError("MQTT backend is not connected")
        if not self._injected and not (self._connected and self._connected.is_set()):
            raise BackendError("MQTT backend is not connected")
        return self._client

    async def _publish(self, topic: str, payload: Any, retain: bool = False) -> None:
        body = payload if isinstance(payload, (bytes, str)) else json.dumps(payload, default=str)
        await self._require_client().publish(topic, body, qos=self.qos, retain=retain)

    async def _ensure_subscriptions(self, job_types: Iterable[str]) -> None:
        for job_type in job_types:
            if job_type in self._subscribed_types:
                continue
            self._require_client()
            await self._subscribe_type(job_type)
            self._subscribed_types.add(job_type)

    async def _subscribe_type(self, job_type: str) -> None:
        await self._client.subscribe(self._shared(self.submit_topic(job_type)), qos=self.qos)
        # Plain subscription: retained records are never sent to shared ones
        await self._client.subscribe(self.pending_topic(job_type, "+"), qos=self.qos)

    # Inbound routing

    def handle_message(self, topic: str, payload: bytes, retain: bool = False) -> None:
        """Apply one broker message to the local view."""
        if not topic.startswith(self.prefix + "/"):
            return
        parts = topic[len(self.prefix) + 1:].split("/")
        data = json.loads(payload) if payload else None

        if parts[:2] == ["jobs", "submit"] and data:
            self._accept_submission(Job.from_dict(data))
        elif parts[:2] == ["jobs", "pending"] and len(parts) == 4:
            # Live copies arrive through the shared subscription
            if data and retain:
                self._accept_submission(Job.from_dict(data))
        elif parts[0] == "claims" and len(parts) == 2:
            if data:
                self._claim_markers[parts[1]] = data
            else:
                self._claim_markers.pop(parts[1], None)
        elif parts[:2] in (["jobs", "completed"], ["jobs", "failed"]) and data:
            job = Job.from_dict(data)
            self._jobs[job.id] = job
            self._inbox.pop(job.id, None)
        elif parts[0] == "workers" and len(parts) == 3:
            self._handle_worker_message(parts[1], parts[2], data, retain)

    def _accept_submission(self, job: Job) -> None:
        known = self._jobs.get(job.id)
        if job.id in self._claims or (known is not None and known.is_terminal):
            return
        self._inbox[job.id] = job
        self._jobs[job.id] = job

    def _handle_worker_message(self, kind: str, key: str, data: Any, retain: bool) -> None:
        if kind == "register":
            if not data:
                self._fleet.pop(key, None)
                self._fleet_clients.pop(key, None)
                return
            info = WorkerInfo.from_dict(data)
            if retain:
                # Age retained registrations from when they were first seen
                info.last_heartbeat_at = utcnow()
            self._fleet[key] = info
            if data.get("client_id"):
                self._fleet_clients[key] = data["client_id"]
        elif kind == "heartbeat":
            info = self._fleet.get(key)
            if info is not None:
                info.last_heartbeat_at = utcnow()
        elif kind == "status" and data and data.get("status") == "offline":
            for worker_id, client_id in list(self._fleet_clients.items()):
                if client_id == key and worker_id not in self._local_workers:
                    self._fleet.pop(worker_id, None)
                    self._fleet_clients.pop(worker_id, None)

    # Operations

    async def enqueue(self, job: Job) -> Job:
        job = self.apply_defaults(job)
        await self._submit(job)
        self._jobs[job.id] = job
        return job

    async def _submit(self, job: Job) -> None:
        record = job.to_dict()
        await self._publish(self.pending_topic(job.job_type, job.id), record, retain=True)
        await self._publish(self.submit_topic(job.job_type), record)

    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        record = {**info.to_dict(), "client_id": self.client_id}
        self._fleet[worker_id] = info
        self._fleet_clients[worker_id] = self.client_id
        self._local_workers.add(worker_id)
        await self._publish(self.topic("workers", "register", worker_id), record, retain=True)
        await self._publish(
            self.topic("workers", "status", self.client_id),
            {"client_id": self.client_id, "status": "online"},
            retain=True,
        )

    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        if worker_id not in self._local_workers:
            logger.warning(f"Heartbeat from unknown worker {worker_id}")
            return False
        now = utcnow()
        self._fleet[worker_id].last_heartbeat_at = now
        await self._publish(
            self.topic("workers", "heartbeat", worker_id),
            {"worker_id": worker_id, "timestamp": now.isoformat()},
        )
        return True

    async def unregister_worker(self, worker_id: str) -> None:
        self._local_workers.discard(worker_id)
        self._fleet.pop(worker_id, None)
        self._fleet_clients.pop(worker_id, None)
        await self._publish(self.topic("workers", "register", worker_id), b"", retain=True)

    def _held_by_live_peer(self, job_id: str, worker_id: str) -> bool:
        marker = self._claim_markers.get(job_id)
        if not marker:
            return False
        holder = marker.get("worker_id")
        if holder == worker_id:
            return False
        peer = self._fleet.get(holder)
        return peer is not None and not peer.is_stale(self.stale_after)

    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        await self._ensure_subscriptions(job_types)
        now = utcnow()
        candidates = sorted(
            (j for j in self._inbox.values() if j.job_type in job_types and j.is_available(now)),
            key=lambda j: (-j.priority, j.created_at),
        )
        for job in candidates:
            del self._inbox[job.id]
            if self._held_by_live_peer(job.id, worker_id):
                logger.info(f"Dropping duplicate delivery of job {job.id}")
                continue
            job.status = JobStatus.CLAIMED
            job.assigned_worker_id = worker_id
            job.claimed_at = now
            job.attempt_count += 1
            marker = {"worker_id": worker_id, "claimed_at": now.isoformat(), "job": job.to_dict()}
            await self._publish(self.claim_topic(job.id), marker, retain=True)
            await self._publish(self.pending_topic(job.job_type, job.id), b"", retain=True)
            self._claim_markers[job.id] = marker
            self._claims[job.id] = (job, worker_id)
            self._jobs[job.id] = job
            return Job.from_dict(job.to_dict())
        return None

    def _owned(self, job_id: str, worker_id: str) -> Job:
        claim = self._claims.get(job_id)
        if claim is None:
            if job_id not in self._jobs:
                raise JobNotFoundError(f"Job {job_id} not found")
            raise ClaimError(f"Job {job_id} is not claimed through this connection")
        job, holder = claim
        if holder != worker_id:
            raise ClaimError(f"Worker {worker_id} does not hold the claim on job {job_id}")
        return job

    async def _release(self, job_id: str) -> None:
        self._claims.pop(job_id, None)
        self._claim_markers.pop(job_id, None)
        await self._publish(self.claim_topic(job_id), b"", retain=True)

    async def start_job(self, job_id: str, worker_id: str) -> None:
        self._owned(job_id, worker_id).status = JobStatus.RUNNING

    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        job = self._owned(job_id, worker_id)
        job.status = JobStatus.COMPLETED
        job.result = result
        job.assigned_worker_id = None
        job.completed_at = utcnow()
        await self._publish(self.topic("jobs", "completed"), job.to_dict())
        await self._release(job_id)

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        job = self._owned(job_id, worker_id)
        status = await self._settle_failure(job, error_message, retryable)
        await self._release(job_id)
        return status

    async def _settle_failure(self, job: Job, error_message: str, retryable: bool) -> JobStatus:
        status = apply_failure(job, error_message, retryable, self.retry_policy)
        if status == JobStatus.RETRYING:
            await self._publish(self.topic("jobs", "retry"), job.to_dict())
            await self._submit(job)
        else:
            await self._publish(self.topic("jobs", "failed"), job.to_dict())
        return status

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return Job.from_dict(job.to_dict()) if job else None

    async def list_workers(self) -> List[WorkerInfo]:
        return list(self._fleet.values())

    async def get_stats(self) -> QueueStats:
        now = utcnow()
        return QueueStats(
            by_status=dict(Counter(j.status.value for j in self._jobs.values())),
            by_type=dict(Counter(j.job_type for j in self._jobs.values())),
            workers=len(self._fleet),
            stale_workers=sum(1 for w in self._fleet.values() if w.is_stale(self.stale_after, now)),
        )

    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        """Republish jobs whose retained claim belongs to a dead worker."""
        threshold = self.stale_after if stale_after is None else stale_after
        now = utcnow()
        for worker_id, info in list(self._fleet.items()):
            if worker_id not in self._local_workers and info.is_stale(threshold, now):
                del self._fleet[worker_id]
                self._fleet_clients.pop(worker_id, None)

        reclaimed = []
        for job_id, marker in list(self._claim_markers.items()):
            holder = marker.get("worker_id")
            if job_id in self._claims or holder in self._fleet or not marker.get("job"):
                continue
            job = Job.from_dict(marker["job"])
            apply_failure(job, "worker lost", True, self.retry_policy, now)
            if job.status == JobStatus.RETRYING:
                job.available_at = now
                await self._submit(job)
            else:
                await self._publish(self.topic("jobs", "failed"), job.to_dict())
            self._jobs[job_id] = job
            await self._release(job_id)
            reclaimed.append(job_id)
        return reclaimed

    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        old = [
            job_id for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at and job.completed_at < cutoff
        ]
        for job_id in old:
            del self._jobs[job_id]
        return len(old)
