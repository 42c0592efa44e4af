from mail_scheduler.prometheus import SchedulerMetrics


def test_scheduler_metrics_counters_and_gauges():
    metrics = SchedulerMetrics()

    metrics.inc_claimed()
    metrics.inc_orphaned()
    metrics.inc_sent("alice")
    metrics.inc_failed(None)
    metrics.inc_rate_limited("")
    metrics.inc_retry()
    metrics.set_queue_counts({"waiting": 2, "active": 1})
    metrics.set_message_counts({"PENDING": 3})

    output = metrics.generate_latest()
    assert b"msched_claimed_total 1.0" in output
    assert b"msched_orphaned_claims_total 1.0" in output
    assert b'msched_sent_total{sender="alice"} 1.0' in output
    assert b'msched_failed_total{sender="anonymous"} 1.0' in output
    assert b'msched_rate_limited_total{sender="anonymous"} 1.0' in output
    assert b'msched_queue_jobs{state="waiting"} 2.0' in output
    assert b'msched_messages{status="PENDING"} 3.0' in output


def test_instances_do_not_share_registries():
    first = SchedulerMetrics()
    second = SchedulerMetrics()
    first.inc_retry()
    assert second.registry.get_sample_value("msched_retries_total") == 0
