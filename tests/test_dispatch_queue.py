import pytest

from mail_scheduler.dispatch_queue import Backoff, DispatchQueue, JobOptions, QueueLimiter
from mail_scheduler.models import DeliveryJob


def _job(idx=1, sender="alice"):
    return DeliveryJob(message_id=f"msg-{idx}", to="bob@example.com", subject=f"S{idx}", body="<p>x</p>", sender=sender)


async def _queue(db_path, clock, **kwargs):
    queue = DispatchQueue(db_path, clock=clock, **kwargs)
    await queue.init_db()
    return queue


def test_backoff_delays():
    assert [Backoff().delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert [Backoff(type="fixed", delay=5).delay_for(n) for n in (1, 2, 3)] == [5, 5, 5]
    with pytest.raises(ValueError):
        Backoff(type="linear")
    with pytest.raises(ValueError):
        JobOptions(max_attempts=0)
    with pytest.raises(ValueError):
        QueueLimiter(max=0)
    with pytest.raises(ValueError):
        QueueLimiter(duration=0)


@pytest.mark.asyncio
async def test_reserve_is_fifo_and_carries_payload(db_path, clock):
    queue = await _queue(db_path, clock)
    assert await queue.reserve("w1") is None

    await queue.enqueue(_job(1))
    await queue.enqueue(_job(2, sender=None))

    first = await queue.reserve("w1")
    second = await queue.reserve("w2")
    assert first.data == _job(1)
    assert second.data.sender is None
    assert first.attempts_made == 1
    assert first.name == "send-email"
    assert first.worker_id == "w1"
    assert await queue.reserve("w3") is None
    assert (await queue.counts())["active"] == 2


@pytest.mark.asyncio
async def test_jobs_survive_a_new_queue_instance(db_path, clock):
    queue = await _queue(db_path, clock)
    await queue.enqueue(_job(1))

    reopened = await _queue(db_path, clock)
    job = await reopened.reserve("w1")
    assert job.data.message_id == "msg-1"


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff_then_drops(db_path, clock):
    queue = await _queue(db_path, clock)
    await queue.enqueue(_job(1))

    job = await queue.reserve("w1")
    assert await queue.fail(job, RuntimeError("boom")) is True
    assert await queue.reserve("w1") is None
    assert await queue.next_available_ts() == clock() + 1

    clock.advance(1)
    job = await queue.reserve("w1")
    assert job.attempts_made == 2
    assert job.last_error == "boom"
    assert await queue.fail(job, "boom again") is True

    clock.advance(1.5)
    assert await queue.reserve("w1") is None
    clock.advance(0.5)
    job = await queue.reserve("w1")
    assert job.attempts_made == 3
    assert job.is_last_attempt
    assert await queue.fail(job, "final") is False

    clock.advance(3600)
    assert await queue.reserve("w1") is None
    assert await queue.counts() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_failed_jobs_can_be_kept(db_path, clock):
    queue = await _queue(db_path, clock)
    await queue.enqueue(_job(1), JobOptions(max_attempts=1, remove_on_fail=False))

    job = await queue.reserve("w1")
    await queue.fail(job, "nope")

    [row] = await queue.list_jobs("failed")
    assert row["last_error"] == "nope"
    assert row["payload"]["message_id"] == "msg-1"


@pytest.mark.asyncio
async def test_complete_removes_or_keeps(db_path, clock):
    queue = await _queue(db_path, clock)
    await queue.enqueue(_job(1))
    await queue.enqueue(_job(2), JobOptions(remove_on_success=False))

    await queue.complete(await queue.reserve("w1"))
    await queue.complete(await queue.reserve("w1"))

    counts = await queue.counts()
    assert counts["completed"] == 1
    assert counts["waiting"] == counts["active"] == 0


@pytest.mark.asyncio
async def test_delayed_job(db_path, clock):
    queue = await _queue(db_path, clock)
    await queue.enqueue(_job(1), JobOptions(delay=30))

    assert await queue.reserve("w1") is None
    clock.advance(30)
    assert await queue.reserve("w1") is not None


@pytest.mark.asyncio
async def test_global_limiter_caps_reservations(db_path, clock):
    queue = await _queue(db_path, clock, limiter=QueueLimiter(max=2, duration=60))
    for idx in range(3):
        await queue.enqueue(_job(idx))

    assert await queue.reserve("w1") is not None
    clock.advance(30)
    assert await queue.reserve("w1") is not None
    assert await queue.reserve("w1") is None
    assert (await queue.counts())["waiting"] == 1

    clock.advance(30)
    assert await queue.reserve("w1") is not None


@pytest.mark.asyncio
async def test_recover_stalled_redelivers(db_path, clock):
    queue = await _queue(db_path, clock, lock_duration=10)
    await queue.enqueue(_job(1))
    await queue.reserve("w1")

    assert await queue.recover_stalled() == 0
    clock.advance(11)
    assert await queue.recover_stalled() == 1

    job = await queue.reserve("w2")
    assert job.attempts_made == 2
    assert job.worker_id == "w2"


@pytest.mark.asyncio
async def test_late_ack_from_expired_lock_is_ignored(db_path, clock):
    queue = await _queue(db_path, clock, lock_duration=10)
    await queue.enqueue(_job(1))
    slow = await queue.reserve("w1")

    clock.advance(11)
    assert await queue.recover_stalled() == 1
    current = await queue.reserve("w2")
    assert current.id == slow.id

    assert await queue.complete(slow) is False
    assert await queue.fail(slow, "late") is False
    assert (await queue.counts())["active"] == 1

    assert await queue.fail(current, "rate limited") is True
    assert await queue.has_live_job("msg-1") is True
    [row] = await queue.list_jobs("waiting")
    assert row["last_error"] == "rate limited"


@pytest.mark.asyncio
async def test_same_worker_cannot_ack_an_earlier_reservation(db_path, clock):
    queue = await _queue(db_path, clock, lock_duration=10)
    await queue.enqueue(_job(1), JobOptions(remove_on_success=False))
    first = await queue.reserve("w1")

    clock.advance(11)
    await queue.recover_stalled()
    second = await queue.reserve("w1")

    assert await queue.complete(first) is False
    assert await queue.complete(second) is True
    assert (await queue.counts())["completed"] == 1


@pytest.mark.asyncio
async def test_recover_stalled_drops_exhausted_jobs(db_path, clock):
    queue = await _queue(db_path, clock, lock_duration=10)
    await queue.enqueue(_job(1), JobOptions(max_attempts=1))
    await queue.reserve("w1")

    clock.advance(11)
    assert await queue.recover_stalled() == 0
    assert await queue.has_live_job("msg-1") is False


@pytest.mark.asyncio
async def test_has_live_job(db_path, clock):
    queue = await _queue(db_path, clock)
    assert await queue.has_live_job("msg-1") is False
    await queue.enqueue(_job(1))
    assert await queue.has_live_job("msg-1") is True
    job = await queue.reserve("w1")
    assert await queue.has_live_job("msg-1") is True
    await queue.complete(job)
    assert await queue.has_live_job("msg-1") is False
