from __future__ import annotations

import asyncio
import json

import pytest

from stratus.common.metrics import PROVISION_FAILED
from stratus.common.security import compute_signature
from stratus.control_plane import admission
from stratus.control_plane.admission import (
    AdmissionController,
    AdmissionReason,
    ConcurrencyGate,
    SlidingWindowRateLimiter,
    has_required_label,
)
from tests.utils.fakes import WEBHOOK_SECRET, signed_webhook, workflow_job_payload


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvisioner:
    def __init__(self, *, hold: asyncio.Event | None = None, error: Exception | None = None, delay: float = 0.0):
        self.events = []
        self.hold = hold
        self.error = error
        self.delay = delay

    async def provision(self, event):  # noqa: ANN001
        self.events.append(event)
        if self.hold is not None:
            await self.hold.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return None


def _controller(
    provisioner: FakeProvisioner,
    *,
    limit: int = 20,
    capacity: int = 10,
    clock: FakeClock | None = None,
    provision_timeout: float = 300.0,
) -> AdmissionController:
    return AdmissionController(
        webhook_secret=WEBHOOK_SECRET,
        required_label="self-hosted",
        rate_limiter=SlidingWindowRateLimiter(limit, 60.0, clock=clock or FakeClock()),
        gate=ConcurrencyGate(capacity),
        provisioner=provisioner,
        provision_timeout=provision_timeout,
    )


def _admit(controller: AdmissionController, payload: dict, *, event_type: str = "workflow_job", signature=None):
    body, headers = signed_webhook(payload)
    return controller.admit(
        body,
        signature=signature if signature is not None else headers["X-Hub-Signature-256"],
        event_type=event_type,
        client_ip="203.0.113.10",
    )


def test_rate_limiter_blocks_after_limit_and_recovers_after_window() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, 60.0, clock=clock)

    assert [limiter.allow("acme/widgets") for _ in range(3)] == [True, True, True]
    assert limiter.allow("acme/widgets") is False
    assert limiter.allow("acme/other") is True

    clock.advance(60.0)
    assert limiter.allow("acme/widgets") is True
    assert limiter.pending("acme/widgets") == 1


def test_rate_limiter_window_slides() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 10.0, clock=clock)
    assert limiter.allow("r")
    clock.advance(5)
    assert limiter.allow("r")
    clock.advance(5)
    # The first event has just left the window.
    assert limiter.allow("r")
    assert not limiter.allow("r")


@pytest.mark.parametrize("limit", [0, -1])
def test_rate_limiter_rejects_non_positive_limit(limit) -> None:
    with pytest.raises(ValueError, match="at least 1"):
        SlidingWindowRateLimiter(limit, 60.0)


def test_concurrency_gate_bounds_slots() -> None:
    gate = ConcurrencyGate(2)
    assert gate.try_acquire()
    assert gate.try_acquire()
    assert not gate.try_acquire()
    assert gate.in_use == 2

    gate.release()
    assert gate.in_use == 1
    assert gate.try_acquire()


def test_concurrency_gate_rejects_unbalanced_release() -> None:
    gate = ConcurrencyGate(1)
    with pytest.raises(RuntimeError):
        gate.release()
    with pytest.raises(ValueError):
        ConcurrencyGate(0)


def test_required_label_is_case_insensitive() -> None:
    assert has_required_label(["linux", "Self-Hosted"], "self-hosted")
    assert not has_required_label(["ubuntu-latest"], "self-hosted")
    assert not has_required_label([], "self-hosted")


@pytest.mark.asyncio
async def test_admit_launches_provisioning_and_releases_slot() -> None:
    provisioner = FakeProvisioner()
    controller = _controller(provisioner)

    decision = _admit(controller, workflow_job_payload())

    assert decision.admitted
    assert decision.reason is AdmissionReason.ADMITTED
    assert decision.status_code == 202
    assert controller.gate.in_use == 1

    await controller.drain()
    assert len(provisioner.events) == 1
    assert provisioner.events[0].workflow_job.id == 42
    assert controller.gate.in_use == 0


@pytest.mark.asyncio
async def test_admit_rejects_bad_signature_before_parsing(monkeypatch) -> None:
    monkeypatch.setattr(admission, "WorkflowJobEvent", None)
    provisioner = FakeProvisioner()
    controller = _controller(provisioner)

    decision = _admit(controller, workflow_job_payload(), signature="sha256=deadbeef")

    assert decision.reason is AdmissionReason.UNAUTHENTICATED
    assert decision.status_code == 401
    assert controller.gate.in_use == 0
    assert provisioner.events == []


@pytest.mark.asyncio
async def test_admit_ignores_other_events_and_actions() -> None:
    provisioner = FakeProvisioner()
    controller = _controller(provisioner)

    wrong_event = _admit(controller, workflow_job_payload(), event_type="push")
    wrong_action = _admit(controller, workflow_job_payload(action="completed"))
    no_label = _admit(controller, workflow_job_payload(labels=["ubuntu-latest"]))

    assert wrong_event.reason is AdmissionReason.WRONG_EVENT
    assert wrong_action.reason is AdmissionReason.WRONG_ACTION
    assert no_label.reason is AdmissionReason.LABEL_MISMATCH
    assert {d.status_code for d in (wrong_event, wrong_action, no_label)} == {200}
    assert not any(d.admitted for d in (wrong_event, wrong_action, no_label))
    assert controller.pending_tasks == frozenset()


@pytest.mark.asyncio
async def test_admit_rejects_malformed_payload() -> None:
    controller = _controller(FakeProvisioner())
    for body in (b"not json", json.dumps({"action": "queued"}).encode()):
        decision = controller.admit(
            body,
            signature=compute_signature(WEBHOOK_SECRET, body),
            event_type="workflow_job",
            client_ip="127.0.0.1",
        )
        assert decision.reason is AdmissionReason.MALFORMED
        assert decision.status_code == 400


@pytest.mark.asyncio
async def test_rate_limit_does_not_consume_slots() -> None:
    hold = asyncio.Event()
    provisioner = FakeProvisioner(hold=hold)
    controller = _controller(provisioner, limit=2, capacity=5)

    results = [_admit(controller, workflow_job_payload(job_id=i)) for i in range(4)]

    assert [r.status_code for r in results] == [202, 202, 429, 429]
    assert controller.gate.in_use == 2
    hold.set()
    await controller.drain()
    assert controller.gate.in_use == 0


@pytest.mark.asyncio
async def test_capacity_exhausted_launches_nothing() -> None:
    hold = asyncio.Event()
    provisioner = FakeProvisioner(hold=hold)
    controller = _controller(provisioner, capacity=2)

    first = _admit(controller, workflow_job_payload(job_id=1))
    second = _admit(controller, workflow_job_payload(job_id=2, repo="gadgets"))
    third = _admit(controller, workflow_job_payload(job_id=3, repo="gizmos"))

    assert (first.status_code, second.status_code, third.status_code) == (202, 202, 503)
    assert third.reason is AdmissionReason.CAPACITY_EXHAUSTED
    assert len(controller.pending_tasks) == 2

    hold.set()
    await controller.drain()
    assert [e.workflow_job.id for e in provisioner.events] == [1, 2]
    assert controller.gate.in_use == 0

    assert _admit(controller, workflow_job_payload(job_id=4, repo="gizmos")).admitted
    await controller.drain()


@pytest.mark.asyncio
async def test_provisioning_deadline_releases_slot(monkeypatch, dummy_logger) -> None:
    monkeypatch.setattr(admission, "LOGGER", dummy_logger)
    before = PROVISION_FAILED.value("deadline")
    controller = _controller(FakeProvisioner(delay=5.0), provision_timeout=0.01)

    assert _admit(controller, workflow_job_payload()).admitted
    await controller.drain()

    assert controller.gate.in_use == 0
    assert PROVISION_FAILED.value("deadline") == before + 1
    assert dummy_logger.error_calls[0][0] == ("Provisioning deadline exceeded, abandoning attempt",)


@pytest.mark.asyncio
async def test_provisioning_crash_releases_slot(monkeypatch, dummy_logger) -> None:
    monkeypatch.setattr(admission, "LOGGER", dummy_logger)
    controller = _controller(FakeProvisioner(error=RuntimeError("boom")))

    assert _admit(controller, workflow_job_payload()).admitted
    await controller.drain()

    assert controller.gate.in_use == 0
    assert dummy_logger.error_calls


@pytest.mark.asyncio
async def test_drain_cancels_stuck_tasks() -> None:
    controller = _controller(FakeProvisioner(hold=asyncio.Event()))
    assert _admit(controller, workflow_job_payload()).admitted

    await controller.drain(timeout=0.01)

    assert controller.gate.in_use == 0
    assert controller.pending_tasks == frozenset()
