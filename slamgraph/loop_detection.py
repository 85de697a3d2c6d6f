"""Loop candidate detection with a covisibility consistency check."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ConsistentGroup:
    """A candidate's covisibility group and for how many keyframes it has held."""

    keyframes: frozenset
    consistency: int


def min_covisible_score(keyframe: Any, vocabulary: Any) -> float:
    """Lowest similarity between ``keyframe`` and its good covisible keyframes, at most 1."""
    min_score = 1.0
    for other in keyframe.vector_covisible_keyframes():
        if other.is_bad():
            continue
        score = vocabulary.score(keyframe.bow_vec, other.bow_vec)
        if score < min_score:
            min_score = score
    return min_score


class LoopDetector:
    """Finds loop candidates that stay consistent over several consecutive keyframes."""

    # Keyframes that must pass after a loop before the next detection.
    MIN_KEYFRAMES_BETWEEN_LOOPS = 10

    def __init__(self, keyframe_db: Any, vocabulary: Any, consistency_threshold: int = 3) -> None:
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.consistency_threshold = consistency_threshold
        self.consistent_groups: list[ConsistentGroup] = []
        self.enough_consistent_candidates: list[Any] = []
        self.last_loop_kf_id = 0

    def reset(self) -> None:
        """Forget the last loop so detection may start again at once."""
        self.last_loop_kf_id = 0

    def detect(self, keyframe: Any) -> list[Any]:
        """Add ``keyframe`` to the database and return its consistent loop candidates.

        When candidates are returned the keyframe stays protected from
        erasure; otherwise it is released.
        """
        keyframe.set_not_erase()

        if keyframe.id < self.last_loop_kf_id + self.MIN_KEYFRAMES_BETWEEN_LOOPS:
            self.keyframe_db.add(keyframe)
            keyframe.set_erase()
            return []

        min_score = min_covisible_score(keyframe, self.vocabulary)
        candidates = self.keyframe_db.detect_loop_candidates(keyframe, min_score)

        if not candidates:
            self.keyframe_db.add(keyframe)
            self.consistent_groups = []
            keyframe.set_erase()
            return []

        self.enough_consistent_candidates = []
        current_groups: list[ConsistentGroup] = []
        group_taken = [False] * len(self.consistent_groups)

        for candidate in candidates:
            candidate_group = frozenset(candidate.connected_keyframes()) | {candidate}

            enough_consistent = False
            consistent_for_some = False
            for index, previous in enumerate(self.consistent_groups):
                if candidate_group.isdisjoint(previous.keyframes):
                    continue
                consistent_for_some = True
                consistency = previous.consistency + 1
                if not group_taken[index]:
                    current_groups.append(ConsistentGroup(candidate_group, consistency))
                    group_taken[index] = True
                if consistency >= self.consistency_threshold and not enough_consistent:
                    self.enough_consistent_candidates.append(candidate)
                    enough_consistent = True

            if not consistent_for_some:
                current_groups.append(ConsistentGroup(candidate_group, 0))

        self.consistent_groups = current_groups
        self.keyframe_db.add(keyframe)

        if not self.enough_consistent_candidates:
            keyframe.set_erase()
            return []
        return list(self.enough_consistent_candidates)