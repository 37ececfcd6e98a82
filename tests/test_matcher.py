import numpy as np
import pytest

from conftest import nudged, unit_vector
from kiosk_attendance.exceptions import FaceEngineError
from kiosk_attendance.matcher import UNKNOWN_LABEL, FaceMatcher, build_matcher, confidence_from_distance


def test_nearest_descriptor_wins_across_all_samples():
    matcher = FaceMatcher({"1": [unit_vector(0), unit_vector(1)], "2": [unit_vector(2)]}, threshold=0.6)

    result = matcher.match(nudged(unit_vector(1), 0.1))
    assert result.label == "1"
    assert result.distance == pytest.approx(0.1, abs=1e-6)


def test_distance_at_threshold_is_unknown():
    matcher = FaceMatcher({"1": [unit_vector(0)]}, threshold=0.6)
    assert matcher.match(nudged(unit_vector(0), 0.6)).label == UNKNOWN_LABEL
    assert matcher.match(nudged(unit_vector(0), 0.59)).label == "1"


def test_matcher_rejects_empty_and_mixed_references():
    with pytest.raises(FaceEngineError):
        FaceMatcher({}, threshold=0.6)
    with pytest.raises(FaceEngineError):
        FaceMatcher({"1": [np.ones(4)], "2": [np.ones(8)]})


def test_query_length_must_match():
    matcher = FaceMatcher({"1": [unit_vector(0)]})
    with pytest.raises(FaceEngineError):
        matcher.match(np.ones(3))


def test_confidence_from_distance():
    assert confidence_from_distance(0.0) == 100
    assert confidence_from_distance(0.35) == 65
    assert confidence_from_distance(1.4) == 0


def test_build_matcher_needs_users(make_user):
    assert build_matcher([]) is None
    user = make_user()
    matcher = build_matcher([user])
    assert matcher.labels == (str(user.id),)


def test_rebuild_swaps_in_new_identities(engine, make_user):
    first = make_user(dni="1", descriptors=[unit_vector(0)])
    engine.rebuild_matcher([first])
    old_matcher = engine.matcher
    assert engine.match(unit_vector(3)).label == UNKNOWN_LABEL

    second = make_user(dni="2", name="Luis", descriptors=[unit_vector(3)])
    engine.rebuild_matcher([first, second])

    assert engine.matcher is not old_matcher
    assert engine.match(unit_vector(3)).label == str(second.id)
    # The previous index is left untouched for any cycle still holding it.
    assert old_matcher.match(unit_vector(3)).label == UNKNOWN_LABEL


def test_match_without_matcher_returns_none(engine):
    engine.rebuild_matcher([])
    assert engine.match(unit_vector(0)) is None


def test_enrolled_sample_matches_itself_at_zero_distance(engine, make_user):
    sample = np.random.default_rng(3).standard_normal(128).astype(np.float32)
    user = make_user(descriptors=[sample])
    engine.rebuild_matcher([user])

    result = engine.match(sample)
    assert result.label == str(user.id)
    assert result.distance == pytest.approx(0.0, abs=1e-6)


def test_rebuild_leaves_out_minority_descriptor_lengths(engine, make_user):
    first = make_user(dni="1", descriptors=[unit_vector(0)])
    second = make_user(dni="2", name="Luis", descriptors=[unit_vector(3)])
    engine.rebuild_matcher([first])
    stale = engine.matcher

    odd = make_user(dni="3", name="Odd", descriptors=[unit_vector(0, dim=3)])
    engine.rebuild_matcher([first, second, odd])

    assert engine.matcher is not stale
    assert engine.matcher.labels == (str(first.id), str(second.id))
    assert engine.match(unit_vector(3)).label == str(second.id)
