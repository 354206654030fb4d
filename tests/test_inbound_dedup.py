from atendimento.services.inbound_dedup import InboundDeduplicator


def test_repeated_message_id_is_detected_inside_window():
    dedup = InboundDeduplicator(window_ms=300_000, max_entries=100)

    assert dedup.seen("MSG-001", now=0.0) is False
    assert dedup.seen("MSG-001", now=10.0) is True
    assert dedup.seen("MSG-002", now=10.0) is False


def test_entries_expire_after_window():
    dedup = InboundDeduplicator(window_ms=300_000, max_entries=100)
    dedup.seen("MSG-001", now=0.0)

    assert dedup.seen("MSG-001", now=301.0) is False
    assert len(dedup) == 1


def test_oldest_entries_are_evicted_when_full():
    dedup = InboundDeduplicator(window_ms=300_000, max_entries=2)
    for index, message_id in enumerate(["a", "b", "c"]):
        dedup.seen(message_id, now=float(index))

    assert len(dedup) == 2
    assert dedup.seen("a", now=3.0) is False


def test_missing_message_id_is_never_duplicate():
    dedup = InboundDeduplicator()

    assert dedup.seen(None) is False
    assert dedup.seen("") is False
    assert len(dedup) == 0
