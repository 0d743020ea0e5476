import asyncio
import logging
from datetime import timedelta

import pytest

from errors import CaptureUnavailable, RecognizerFailure
from scheduler import RecognitionScheduler, build_gallery, normalize_name
from schemas import EnrolledIdentity, RecordOutcome

from conftest import T0, BlockingRecognizer, FakeClock, FakeRecognizer, FakeVideoSource, png_data_url


def enroll(store, *names):
    for name in names:
        store.add(name, png_data_url())


def ledger_names(engine):
    return [r.identity_name for r in engine.list_all()]


def test_normalize_name():
    assert normalize_name("  Alice ") == "alice"


def test_end_to_end_dedup_scenario(enrollments, engine, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    recognizer.matches = [("Bob", 0.95)]

    clock.advance(seconds=1)
    first = run(scheduler.tick())
    assert [d.outcome for d in first] == [RecordOutcome.RECORDED]
    assert ledger_names(engine) == ["Bob"]

    clock.now = T0 + timedelta(minutes=30)
    second = run(scheduler.tick())
    assert [d.outcome for d in second] == [RecordOutcome.SUPPRESSED]
    assert ledger_names(engine) == ["Bob"]

    clock.now = T0 + timedelta(minutes=90)
    run(scheduler.tick())
    assert ledger_names(engine) == ["Bob", "Bob"]
    assert all(r.status.value == "Present" for r in engine.list_all())


@pytest.mark.parametrize("confidence, recorded", [
    (0.70, False),
    (0.70001, True),
    (0.5, False),
    (1.0, True),
])
def test_confidence_gate(enrollments, engine, recognizer, scheduler, run, confidence, recorded):
    enroll(enrollments, "Bob")
    recognizer.matches = [("Bob", confidence)]

    run(scheduler.tick())

    assert ledger_names(engine) == (["Bob"] if recorded else [])


@pytest.mark.parametrize("label", ["alice", "ALICE", "  Alice  ", "Alice"])
def test_name_matching_ignores_case_and_whitespace(enrollments, engine, recognizer, scheduler, run, label):
    enrollments.set([EnrolledIdentity(name=" Alice ", reference_image=png_data_url())])
    recognizer.matches = [(label, 0.9)]

    detections = run(scheduler.tick())

    assert [d.label for d in detections] == [label]
    assert ledger_names(engine) == ["Alice"]


def test_unknown_label_is_rejected(enrollments, engine, recognizer, scheduler, run):
    enroll(enrollments, "Bob")
    recognizer.matches = [("Mallory", 0.99), ("Unknown", 1.0)]

    detections = run(scheduler.tick())

    assert detections == []
    assert engine.list_all() == []


def test_detections_follow_recognizer_order(enrollments, engine, recognizer, scheduler, run):
    enroll(enrollments, "Bob", "Carol")
    recognizer.matches = [("Carol", 0.9), ("Bob", 0.8)]

    detections = run(scheduler.tick())

    assert [d.name for d in detections] == ["Carol", "Bob"]
    # ledger is newest-first
    assert ledger_names(engine) == ["Bob", "Carol"]


def test_cooldown_allows_one_call(enrollments, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")

    run(scheduler.tick())
    clock.advance(seconds=3.9)
    run(scheduler.tick())
    assert len(recognizer.calls) == 1

    clock.advance(seconds=0.1)
    run(scheduler.tick())
    assert len(recognizer.calls) == 2


def test_empty_gallery_never_calls_recognizer(recognizer, video_source, scheduler, run):
    assert run(scheduler.tick()) == []
    assert recognizer.calls == []
    assert video_source.captures == 0
    assert scheduler.last_scan_time is None


def test_missing_frame_skips_cycle(enrollments, recognizer, video_source, scheduler, run):
    enroll(enrollments, "Bob")
    video_source.frame = None

    assert run(scheduler.tick()) == []
    assert recognizer.calls == []
    assert scheduler.last_scan_time is None
    assert scheduler.processing is False


def test_capture_unavailable_error_skips_cycle(enrollments, recognizer, scheduler, run):
    enroll(enrollments, "Bob")

    class BrokenCamera(FakeVideoSource):
        def capture_frame(self):
            raise CaptureUnavailable("camera unplugged")

    scheduler.video_source = BrokenCamera()

    assert run(scheduler.tick()) == []
    assert recognizer.calls == []


def test_unexpected_capture_error_skips_cycle(enrollments, recognizer, scheduler, clock, run, caplog):
    enroll(enrollments, "Bob")

    class FlakyCamera(FakeVideoSource):
        def capture_frame(self):
            self.captures += 1
            if self.captures == 1:
                raise RuntimeError("driver glitch")
            return self.frame

    scheduler.video_source = FlakyCamera()

    with caplog.at_level(logging.WARNING, logger="faceguard.scheduler"):
        assert run(scheduler.tick()) == []
    assert "driver glitch" in caplog.text
    assert scheduler.processing is False

    clock.advance(seconds=1)
    run(scheduler.tick())
    assert len(recognizer.calls) == 1


def test_no_video_source_skips_tick(enrollments, recognizer, scheduler, run):
    enroll(enrollments, "Bob")
    scheduler.video_source = None

    assert run(scheduler.tick()) == []
    assert recognizer.calls == []


def test_request_contains_probe_and_gallery(enrollments, recognizer, scheduler, run):
    enroll(enrollments, "Bob", "Alice")

    run(scheduler.tick())

    [(probe, gallery)] = recognizer.calls
    assert probe == b"probe-frame"
    assert [entry.label for entry in gallery] == ["Bob", "Alice"]
    assert all(entry.image.startswith(b"\x89PNG") for entry in gallery)


def test_undecodable_reference_is_skipped(enrollments, engine, recognizer, scheduler, run):
    enrollments.set([
        EnrolledIdentity(name="Broken", reference_image="data:image/png;base64,@@@not-base64@@@"),
        EnrolledIdentity(name="Garbage", reference_image="data:image/png;base64,aGVsbG8="),
        EnrolledIdentity(name="Bob", reference_image=png_data_url()),
    ])
    recognizer.matches = [("Bob", 0.9)]

    run(scheduler.tick())

    [(_, gallery)] = recognizer.calls
    assert [entry.label for entry in gallery] == ["Bob"]
    assert ledger_names(engine) == ["Bob"]


def test_build_gallery_keeps_valid_entries():
    identities = [
        EnrolledIdentity(name="Bob", reference_image=png_data_url()),
        EnrolledIdentity(name="Empty", reference_image=""),
    ]

    assert [entry.label for entry in build_gallery(identities)] == ["Bob"]


@pytest.mark.parametrize("error", [RecognizerFailure("quota exceeded"), RuntimeError("socket closed")])
def test_recognizer_failure_is_contained(enrollments, engine, recognizer, scheduler, run, caplog, error):
    enroll(enrollments, "Bob")
    recognizer.error = error

    with caplog.at_level(logging.WARNING, logger="faceguard.scheduler"):
        detections = run(scheduler.tick())

    assert detections == []
    assert engine.list_all() == []
    assert scheduler.processing is False
    assert str(error) in scheduler.last_error
    assert "Recognition failed" in caplog.text


def test_failure_does_not_retry_before_cooldown(enrollments, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    recognizer.error = RecognizerFailure("boom")

    run(scheduler.tick())
    clock.advance(seconds=1)
    run(scheduler.tick())

    assert len(recognizer.calls) == 1


def test_success_clears_last_error(enrollments, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    recognizer.error = RecognizerFailure("boom")
    run(scheduler.tick())

    recognizer.error = None
    clock.advance(seconds=5)
    run(scheduler.tick())

    assert scheduler.last_error is None


def test_recognizer_timeout_is_a_failure(enrollments, engine, clock, run):
    enroll(enrollments, "Bob")

    class SlowRecognizer(FakeRecognizer):
        async def identify(self, probe, gallery):
            await asyncio.sleep(5)
            return []

    scheduler = RecognitionScheduler(enrollments, engine, SlowRecognizer(), FakeVideoSource(),
                                     timeout=0.05, clock=clock)

    assert run(scheduler.tick()) == []
    assert "timed out" in scheduler.last_error
    assert scheduler.processing is False


def test_at_most_one_call_in_flight(enrollments, engine, run):
    enroll(enrollments, "Bob")
    clock = FakeClock()

    async def scenario():
        recognizer = BlockingRecognizer([("Bob", 0.9)])
        scheduler = RecognitionScheduler(enrollments, engine, recognizer, FakeVideoSource(),
                                         cooldown=4, clock=clock)
        first = asyncio.create_task(scheduler.tick())
        await recognizer.entered.wait()
        assert scheduler.processing is True

        clock.advance(seconds=60)
        assert await scheduler.tick() == []
        assert await scheduler.scan_frame(b"other") == []

        recognizer.release.set()
        detections = await first
        return recognizer, scheduler, detections

    recognizer, scheduler, detections = run(scenario())

    assert len(recognizer.calls) == 1
    assert [d.name for d in detections] == ["Bob"]
    assert scheduler.processing is False


def test_stop_discards_in_flight_result(enrollments, engine, run):
    enroll(enrollments, "Bob")

    async def scenario():
        recognizer = BlockingRecognizer([("Bob", 0.9)])
        scheduler = RecognitionScheduler(enrollments, engine, recognizer, FakeVideoSource(),
                                         clock=FakeClock())
        pending = asyncio.create_task(scheduler.tick())
        await recognizer.entered.wait()
        await scheduler.stop()
        recognizer.release.set()
        return scheduler, await pending

    scheduler, detections = run(scenario())

    assert detections == []
    assert engine.list_all() == []
    assert scheduler.processing is False


def test_active_match_is_held_for_display_window(enrollments, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    recognizer.matches = [("bob", 0.9)]

    run(scheduler.tick())
    assert scheduler.active_match_label == "Bob"

    clock.advance(seconds=2.9)
    assert scheduler.active_match_label == "Bob"

    clock.advance(seconds=0.1)
    assert scheduler.active_match_label is None


def test_active_match_fires_for_suppressed_detection(enrollments, engine, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    recognizer.matches = [("Bob", 0.9)]
    run(scheduler.tick())
    clock.advance(seconds=10)
    assert scheduler.active_match_label is None

    detections = run(scheduler.tick())

    assert detections[0].outcome is RecordOutcome.SUPPRESSED
    assert scheduler.active_match_label == "Bob"
    assert len(engine.list_all()) == 1


def test_scan_frame_uses_supplied_frame(enrollments, recognizer, video_source, scheduler, run):
    enroll(enrollments, "Bob")

    run(scheduler.scan_frame(b"browser-frame"))

    assert recognizer.calls[0][0] == b"browser-frame"
    assert video_source.captures == 0


def test_enrollment_changes_apply_to_next_cycle(enrollments, recognizer, scheduler, clock, run):
    enroll(enrollments, "Bob")
    run(scheduler.tick())

    enroll(enrollments, "Alice")
    clock.advance(seconds=5)
    run(scheduler.tick())

    assert [len(gallery) for _, gallery in recognizer.calls] == [1, 2]


def test_timer_runs_ticks_until_closed(enrollments, engine, recognizer, run):
    enroll(enrollments, "Bob")
    video_source = FakeVideoSource()

    async def scenario():
        scheduler = RecognitionScheduler(enrollments, engine, recognizer, video_source,
                                         interval=0.01, cooldown=0, clock=FakeClock())
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.1)
        await scheduler.close()
        return scheduler

    scheduler = run(scenario())

    assert not scheduler.running
    assert len(recognizer.calls) >= 2
    assert video_source.closed is True


def test_status_reports_scanner_state(enrollments, recognizer, scheduler, run):
    enroll(enrollments, "Bob")
    recognizer.matches = [("Bob", 0.9)]

    run(scheduler.tick())
    status = scheduler.status()

    assert status["running"] is False
    assert status["has_video_source"] is True
    assert status["processing"] is False
    assert status["active_match"] == "Bob"
    assert status["last_scan_time"] == T0.isoformat()
    assert status["last_error"] is None
    assert status["recognizer_calls"] == 1
