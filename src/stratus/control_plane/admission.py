"""Admission of workflow_job webhooks: authentication, filtering, throttling and dispatch."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

import structlog
from fastapi import status
from pydantic import ValidationError

from ..common.metrics import PROVISION_FAILED
from ..common.observability import job_log_context
from ..common.schemas import RunnerInstance, WorkflowJobEvent
from ..common.security import SecretLike, verify_webhook_signature

LOGGER = structlog.get_logger("stratus.control_plane.admission")

WORKFLOW_JOB_EVENT = "workflow_job"
QUEUED_ACTION = "queued"


class AdmissionReason(str, Enum):
    ADMITTED = "admitted"
    OVERSIZED = "oversized"
    UNAUTHENTICATED = "unauthenticated"
    WRONG_EVENT = "wrong-event"
    MALFORMED = "malformed"
    WRONG_ACTION = "wrong-action"
    LABEL_MISMATCH = "label-mismatch"
    RATE_LIMITED = "rate-limited"
    CAPACITY_EXHAUSTED = "capacity-exhausted"


_RESPONSES: dict[AdmissionReason, tuple[int, str]] = {
    AdmissionReason.ADMITTED: (status.HTTP_202_ACCEPTED, "provisioning"),
    AdmissionReason.OVERSIZED: (status.HTTP_400_BAD_REQUEST, "invalid request"),
    AdmissionReason.UNAUTHENTICATED: (status.HTTP_401_UNAUTHORIZED, "unauthorized"),
    AdmissionReason.WRONG_EVENT: (status.HTTP_200_OK, "ok"),
    AdmissionReason.MALFORMED: (status.HTTP_400_BAD_REQUEST, "invalid request"),
    AdmissionReason.WRONG_ACTION: (status.HTTP_200_OK, "ok"),
    AdmissionReason.LABEL_MISMATCH: (status.HTTP_200_OK, "ok"),
    AdmissionReason.RATE_LIMITED: (status.HTTP_429_TOO_MANY_REQUESTS, "rate limit exceeded"),
    AdmissionReason.CAPACITY_EXHAUSTED: (status.HTTP_503_SERVICE_UNAVAILABLE, "system busy"),
}


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: AdmissionReason
    event: Optional[WorkflowJobEvent] = None

    @classmethod
    def reject(cls, reason: AdmissionReason, event: Optional[WorkflowJobEvent] = None) -> "AdmissionDecision":
        return cls(admitted=False, reason=reason, event=event)

    @property
    def status_code(self) -> int:
        return _RESPONSES[self.reason][0]

    @property
    def detail(self) -> str:
        return _RESPONSES[self.reason][1]

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


class SlidingWindowRateLimiter:
    """Per-key limiter admitting at most ``limit`` events in any trailing ``window``.

    Buckets are pruned on every check, so memory grows with distinct keys only.
    """

    def __init__(self, limit: int, window: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            cutoff = now - self.window
            bucket = self._events[key]
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= self.limit:
                return False
            bucket.append(now)
            return True

    def pending(self, key: str) -> int:
        with self._lock:
            return len(self._events.get(key, ()))


class ConcurrencyGate:
    """Fixed pool of provisioning slots, acquired without blocking."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_use >= self._capacity:
                return False
            self._in_use += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("concurrency slot released without being acquired")
            self._in_use -= 1


class Provisioner(Protocol):
    async def provision(self, event: WorkflowJobEvent) -> Optional[RunnerInstance]:
        ...


def has_required_label(labels: Iterable[str], required_label: str) -> bool:
    required = required_label.casefold()
    return any(label.casefold() == required for label in labels)


class AdmissionController:
    """Runs the cheap in-memory checks in order and launches provisioning for admitted jobs.

    ``admit`` is synchronous: neither the limiter lock nor the gate lock is
    ever held across an await.
    """

    def __init__(
        self,
        *,
        webhook_secret: SecretLike,
        required_label: str,
        rate_limiter: SlidingWindowRateLimiter,
        gate: ConcurrencyGate,
        provisioner: Provisioner,
        provision_timeout: float = 300.0,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._required_label = required_label
        self._rate_limiter = rate_limiter
        self._gate = gate
        self._provisioner = provisioner
        self._provision_timeout = provision_timeout
        self._tasks: set[asyncio.Task] = set()

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def pending_tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._tasks)

    def admit(
        self,
        body: bytes,
        *,
        signature: Optional[str],
        event_type: Optional[str],
        client_ip: str,
    ) -> AdmissionDecision:
        if not verify_webhook_signature(body, signature, self._webhook_secret, client_ip):
            return AdmissionDecision.reject(AdmissionReason.UNAUTHENTICATED)

        if event_type != WORKFLOW_JOB_EVENT:
            LOGGER.debug("Ignoring webhook event", event_type=event_type)
            return AdmissionDecision.reject(AdmissionReason.WRONG_EVENT)

        try:
            event = WorkflowJobEvent.model_validate_json(body)
        except ValidationError as exc:
            LOGGER.warning("Invalid webhook payload", client_ip=client_ip, errors=exc.error_count())
            return AdmissionDecision.reject(AdmissionReason.MALFORMED)

        if event.action != QUEUED_ACTION:
            LOGGER.debug("Ignoring webhook action", action=event.action, job_id=event.workflow_job.id)
            return AdmissionDecision.reject(AdmissionReason.WRONG_ACTION, event)

        if not has_required_label(event.workflow_job.labels, self._required_label):
            LOGGER.debug(
                "Ignoring job without required label",
                job_id=event.workflow_job.id,
                labels=event.workflow_job.labels,
            )
            return AdmissionDecision.reject(AdmissionReason.LABEL_MISMATCH, event)

        repo_key = event.repository.full_name
        if not self._rate_limiter.allow(repo_key):
            LOGGER.warning(
                "Repository rate limit exceeded",
                repo=repo_key,
                client_ip=client_ip,
                limit=self._rate_limiter.limit,
                window_seconds=self._rate_limiter.window,
            )
            return AdmissionDecision.reject(AdmissionReason.RATE_LIMITED, event)

        if not self._gate.try_acquire():
            LOGGER.warning(
                "Provisioning pool full, rejecting job",
                job_id=event.workflow_job.id,
                repo=repo_key,
                capacity=self._gate.capacity,
            )
            return AdmissionDecision.reject(AdmissionReason.CAPACITY_EXHAUSTED, event)

        try:
            self._launch(event)
        except BaseException:
            self._gate.release()
            raise
        LOGGER.info("Admitted job for provisioning", job_id=event.workflow_job.id, repo=repo_key)
        return AdmissionDecision(admitted=True, reason=AdmissionReason.ADMITTED, event=event)

    def _launch(self, event: WorkflowJobEvent) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_provisioning(event),
            name=f"provision-{event.workflow_job.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_provisioning(self, event: WorkflowJobEvent) -> None:
        try:
            with job_log_context(job_id=event.workflow_job.id, repo=event.repository.full_name):
                try:
                    await asyncio.wait_for(self._provisioner.provision(event), timeout=self._provision_timeout)
                except asyncio.TimeoutError:
                    PROVISION_FAILED.inc("deadline")
                    LOGGER.error(
                        "Provisioning deadline exceeded, abandoning attempt",
                        timeout_seconds=self._provision_timeout,
                    )
                except Exception as exc:  # noqa: BLE001
                    PROVISION_FAILED.inc("unexpected")
                    LOGGER.exception("Provisioning task failed unexpectedly", error=str(exc))
        finally:
            self._gate.release()

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight provisioning tasks, cancelling any still running after ``timeout``."""

        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            LOGGER.warning("Cancelled provisioning tasks at shutdown", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
