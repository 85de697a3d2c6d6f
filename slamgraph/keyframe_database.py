"""Inverted-file index of keyframes by visual word, for loop and relocalization queries."""

from __future__ import annotations

import contextlib
import threading
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence


class Vocabulary(Protocol):
    """A visual vocabulary: its number of words and a similarity score."""

    def __len__(self) -> int: ...

    def score(self, a: Mapping[int, float], b: Mapping[int, float]) -> float: ...


class IndexedKeyFrame(Protocol):
    """What the database needs from a keyframe."""

    id: int
    bow_vec: Mapping[int, float]
    loop_query: int
    loop_words: int
    loop_score: float
    reloc_query: int
    reloc_words: int
    reloc_score: float

    def connected_keyframes(self) -> Iterable[Any]: ...

    def best_covisibility_keyframes(self, n: int) -> Sequence[Any]: ...


# Neighbours consulted when accumulating scores by covisibility.
_COVISIBLE_NEIGHBOURS = 10


def _min_common_words(max_common_words: int) -> int:
    return int(max_common_words * 0.8)


def _accumulate_and_select(
    scored: list[tuple[float, Any]],
    neighbour_score: Callable[[Any], float | None],
    initial_best: float,
) -> list[Any]:
    """Add up each candidate's score with its qualifying covisible neighbours.

    Every candidate group is represented by its best-scoring member; the groups
    whose accumulated score exceeds 75% of the best one are returned, each
    keyframe at most once and in query order.
    """
    accumulated: list[tuple[float, Any]] = []
    best_acc = initial_best
    for score, keyframe in scored:
        best_score = score
        acc_score = score
        best_kf = keyframe
        for neighbour in keyframe.best_covisibility_keyframes(_COVISIBLE_NEIGHBOURS):
            other = neighbour_score(neighbour)
            if other is None:
                continue
            acc_score += other
            if other > best_score:
                best_kf = neighbour
                best_score = other
        accumulated.append((acc_score, best_kf))
        if acc_score > best_acc:
            best_acc = acc_score

    min_to_retain = 0.75 * best_acc
    selected: dict[Any, None] = {}
    for acc_score, keyframe in accumulated:
        if acc_score > min_to_retain and keyframe not in selected:
            selected[keyframe] = None
    return list(selected)


class KeyFrameDatabase:
    """Keyframes listed under every visual word they contain."""

    def __init__(self, vocabulary: Vocabulary) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted_file: list[list[Any]] = [[] for _ in range(len(vocabulary))]

    def add(self, keyframe: IndexedKeyFrame) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted_file[word].append(keyframe)

    def erase(self, keyframe: IndexedKeyFrame) -> None:
        """Remove the keyframe from the list of each of its words."""
        with self._lock:
            for word in keyframe.bow_vec:
                with contextlib.suppress(ValueError):
                    self._inverted_file[word].remove(keyframe)

    def clear(self) -> None:
        with self._lock:
            self._inverted_file = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, keyframe: IndexedKeyFrame, min_score: float) -> list[Any]:
        """Keyframes not connected to ``keyframe`` that may close a loop with it."""
        connected = set(keyframe.connected_keyframes())
        sharing: list[Any] = []

        with self._lock:
            for word in keyframe.bow_vec:
                for other in self._inverted_file[word]:
                    if other.loop_query != keyframe.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = keyframe.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        min_common = _min_common_words(max(other.loop_words for other in sharing))

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, other.bow_vec)
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        def neighbour_score(neighbour: Any) -> float | None:
            if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                return neighbour.loop_score
            return None

        return _accumulate_and_select(scored, neighbour_score, min_score)

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes similar enough to ``frame`` to try relocalizing against."""
        sharing: list[Any] = []

        with self._lock:
            for word in frame.bow_vec:
                for other in self._inverted_file[word]:
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        min_common = _min_common_words(max(other.reloc_words for other in sharing))

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, other.bow_vec)
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        def neighbour_score(neighbour: Any) -> float | None:
            if neighbour.reloc_query != frame.id:
                return None
            return neighbour.reloc_score

        return _accumulate_and_select(scored, neighbour_score, 0.0)