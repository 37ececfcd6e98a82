import numpy as np
import pytest

from conftest import FRAME, nudged, unit_vector
from kiosk_attendance.recognition_service import DecisionPipeline, PipelineState, VerdictKind


class RecordingAudio:
    def __init__(self):
        self.cues = []

    def play(self, cue):
        self.cues.append(cue)


@pytest.fixture
def events():
    return {"matches": [], "unknowns": []}


@pytest.fixture
def audio():
    return RecordingAudio()


@pytest.fixture
def pipeline(db, engine, settings, events, audio):
    return DecisionPipeline(
        db,
        engine,
        settings,
        kiosk_id="kiosk-test",
        on_match=lambda user, photo: events["matches"].append((user.id, photo)),
        on_unknown=lambda record: events["unknowns"].append(record),
        audio=audio,
        photo_encoder=lambda frame: "data:image/jpeg;base64,AAAA",
    )


@pytest.fixture
def enrolled(make_user, engine):
    user = make_user(descriptors=[unit_vector(0)])
    engine.rebuild_matcher([user])
    return user


def test_confident_match_fires_once_per_cooldown(pipeline, fake_engine, enrolled, events, audio):
    fake_engine.descriptor = nudged(unit_vector(0), 0.2)

    first = pipeline.process_cycle(FRAME, now=100.0)
    assert first.kind is VerdictKind.MATCH
    assert first.user.id == enrolled.id
    assert first.confidence == 80
    assert events["matches"] == [(enrolled.id, "data:image/jpeg;base64,AAAA")]
    assert audio.cues == ["success"]

    assert pipeline.process_cycle(FRAME, now=104.9).kind is VerdictKind.COOLDOWN
    assert len(events["matches"]) == 1

    assert pipeline.process_cycle(FRAME, now=105.1).kind is VerdictKind.MATCH
    assert len(events["matches"]) == 2


def test_single_ambiguous_frame_never_alerts(pipeline, fake_engine, enrolled, events, db):
    fake_engine.descriptor = nudged(unit_vector(0), 0.55)

    assert pipeline.process_cycle(FRAME, now=1.0).kind is VerdictKind.AMBIGUOUS
    assert pipeline.unknown_streak == 1
    assert pipeline.last_state is PipelineState.UNKNOWN_PENDING
    assert events["unknowns"] == []
    assert db.list_unknown_faces() == []


def test_unknown_alert_after_streak_then_rate_limited(pipeline, fake_engine, enrolled, events, audio, db):
    fake_engine.descriptor = unit_vector(5)

    kinds = [pipeline.process_cycle(FRAME, now=10.0 + i * 0.25).kind for i in range(3)]
    assert kinds == [VerdictKind.AMBIGUOUS, VerdictKind.AMBIGUOUS, VerdictKind.UNKNOWN]
    assert len(events["unknowns"]) == 1
    assert audio.cues == ["error"]
    assert pipeline.unknown_streak == 0

    saved = db.list_unknown_faces()
    assert len(saved) == 1
    assert saved[0].kiosk_id == "kiosk-test"
    assert saved[0].timestamp == 10_500

    # Streak builds again but the alert cool-down holds.
    for i in range(6):
        assert pipeline.process_cycle(FRAME, now=11.0 + i * 0.25).kind is VerdictKind.AMBIGUOUS
    assert len(events["unknowns"]) == 1

    assert pipeline.process_cycle(FRAME, now=21.0).kind is VerdictKind.UNKNOWN
    assert len(events["unknowns"]) == 2


def test_confident_match_resets_unknown_streak(pipeline, fake_engine, enrolled, events):
    fake_engine.descriptor = unit_vector(5)
    pipeline.process_cycle(FRAME, now=1.0)
    pipeline.process_cycle(FRAME, now=1.25)
    assert pipeline.unknown_streak == 2

    fake_engine.descriptor = unit_vector(0)
    assert pipeline.process_cycle(FRAME, now=1.5).kind is VerdictKind.MATCH
    assert pipeline.unknown_streak == 0

    fake_engine.descriptor = unit_vector(5)
    assert pipeline.process_cycle(FRAME, now=1.75).kind is VerdictKind.AMBIGUOUS
    assert events["unknowns"] == []


def test_no_face_clears_confidence(pipeline, fake_engine, enrolled):
    fake_engine.descriptor = unit_vector(0)
    pipeline.process_cycle(FRAME, now=1.0)
    assert pipeline.last_confidence == 100

    fake_engine.descriptor = None
    verdict = pipeline.process_cycle(FRAME, now=2.0)
    assert verdict.kind is VerdictKind.NO_FACE
    assert pipeline.last_confidence is None
    assert pipeline.last_state is PipelineState.NO_FACE


def test_empty_matcher_counts_as_ambiguous(pipeline, fake_engine, engine, events):
    engine.rebuild_matcher([])
    fake_engine.descriptor = unit_vector(0)
    kinds = [pipeline.process_cycle(FRAME, now=float(i)).kind for i in range(3)]
    assert kinds[-1] is VerdictKind.UNKNOWN
    assert len(events["unknowns"]) == 1


def test_cycle_skipped_without_frame_or_models(pipeline, fake_engine, enrolled):
    assert pipeline.process_cycle(None).kind is VerdictKind.SKIPPED
    assert pipeline.process_cycle(np.zeros((0, 0, 3), dtype=np.uint8)).kind is VerdictKind.SKIPPED

    fake_engine._ready = False
    fake_engine.descriptor = unit_vector(0)
    assert pipeline.process_cycle(FRAME).kind is VerdictKind.SKIPPED
    assert fake_engine.calls == 0


def test_cycle_errors_do_not_stop_later_cycles(pipeline, fake_engine, enrolled):
    fake_engine.error = RuntimeError("model crashed")
    assert pipeline.process_cycle(FRAME, now=1.0).kind is VerdictKind.SKIPPED
    assert pipeline.state is PipelineState.IDLE

    fake_engine.error = None
    fake_engine.descriptor = unit_vector(0)
    assert pipeline.process_cycle(FRAME, now=2.0).kind is VerdictKind.MATCH


def test_overlapping_cycle_is_skipped(pipeline, fake_engine, enrolled):
    fake_engine.descriptor = unit_vector(0)
    assert pipeline._cycle_lock.acquire(blocking=False)
    try:
        assert pipeline.process_cycle(FRAME, now=1.0).kind is VerdictKind.SKIPPED
    finally:
        pipeline._cycle_lock.release()
    assert fake_engine.calls == 0


def test_deleted_user_is_not_matched(pipeline, fake_engine, enrolled, db, events):
    db.delete_user(enrolled.id)
    fake_engine.descriptor = unit_vector(0)
    assert pipeline.process_cycle(FRAME, now=1.0).kind is VerdictKind.AMBIGUOUS
    assert events["matches"] == []
