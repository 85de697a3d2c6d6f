import threading

import pytest

from slamgraph.loop_closing import LoopClosing


class FakeKeyFrame:
    def __init__(self, kf_id, connected=()):
        self.id = kf_id
        self.bow_vec = {1: 1.0}
        self._connected = set(connected)
        self.not_erase_calls = 0
        self.erase_calls = 0

    def set_not_erase(self):
        self.not_erase_calls += 1

    def set_erase(self):
        self.erase_calls += 1

    def vector_covisible_keyframes(self):
        return list(self._connected)

    def connected_keyframes(self):
        return set(self._connected)

    def is_bad(self):
        return False


class FakeDatabase:
    def __init__(self, candidates=()):
        self.candidates = list(candidates)
        self.added = []

    def add(self, keyframe):
        self.added.append(keyframe)

    def detect_loop_candidates(self, keyframe, min_score):
        return list(self.candidates)


class FakeVocabulary:
    def score(self, a, b):
        return 0.5


def make_closer(candidates=()):
    db = FakeDatabase(candidates)
    return LoopClosing(object(), db, FakeVocabulary(), fix_scale=True), db


def test_insert_skips_first_keyframe():
    closer, _ = make_closer()
    closer.insert_keyframe(FakeKeyFrame(0))
    assert closer.check_new_keyframes() is False
    closer.insert_keyframe(FakeKeyFrame(5))
    assert closer.check_new_keyframes() is True


def test_detect_loop_on_empty_queue_raises():
    closer, _ = make_closer()
    with pytest.raises(LookupError):
        closer.detect_loop()


def test_early_keyframe_is_added_and_released():
    closer, db = make_closer()
    kf = FakeKeyFrame(3)
    closer.insert_keyframe(kf)
    assert closer.detect_loop() is False
    assert db.added == [kf]
    assert kf.erase_calls == 1
    assert kf.not_erase_calls >= 1
    assert closer.current_keyframe is kf
    assert closer.check_new_keyframes() is False


def test_loop_accepted_after_consistent_detections():
    anchor = FakeKeyFrame(1)
    candidate = FakeKeyFrame(2, connected=[anchor])
    closer, db = make_closer([candidate])
    results = []
    for kf_id in range(20, 24):
        kf = FakeKeyFrame(kf_id)
        closer.insert_keyframe(kf)
        results.append(closer.detect_loop())
    assert results == [False, False, False, True]
    assert closer.enough_consistent_candidates == [candidate]
    assert len(db.added) == 4


def test_no_candidates_returns_false():
    closer, db = make_closer([])
    kf = FakeKeyFrame(30)
    closer.insert_keyframe(kf)
    assert closer.detect_loop() is False
    assert db.added == [kf]
    assert kf.erase_calls == 1


def test_reset_clears_queue_and_last_loop():
    closer, _ = make_closer()
    closer.detector.last_loop_kf_id = 42
    closer.insert_keyframe(FakeKeyFrame(7))

    worker = threading.Thread(target=closer.request_reset)
    worker.start()
    while worker.is_alive():
        closer.reset_if_requested()
        worker.join(timeout=0.01)

    assert closer.check_new_keyframes() is False
    assert closer.last_loop_kf_id == 0


def test_reset_without_request_keeps_queue():
    closer, _ = make_closer()
    closer.insert_keyframe(FakeKeyFrame(7))
    closer.reset_if_requested()
    assert closer.check_new_keyframes() is True


def test_finish_flags():
    closer, _ = make_closer()
    assert closer.is_finished() is True
    assert closer.check_finish() is False
    closer.request_finish()
    assert closer.check_finish() is True
    closer.set_finish()
    assert closer.is_finished() is True


def test_set_local_mapper_stores_mapper():
    closer, _ = make_closer()
    mapper = object()
    closer.set_local_mapper(mapper)
    assert closer.local_mapper is mapper