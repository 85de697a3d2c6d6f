"""Removal of weak new map points and of redundant keyframes."""

from __future__ import annotations

from typing import Any, Iterable

# A recent point is dropped when it was found in fewer than this share of the
# frames in which it was predicted to be visible.
_MIN_FOUND_RATIO = 0.25

# Observations a recent point needs, two keyframes after its creation.
_MONOCULAR_MIN_OBSERVATIONS = 2
_STEREO_MIN_OBSERVATIONS = 3

# A keyframe point is redundant when this many other keyframes see it at the
# same or a finer scale.
_REDUNDANT_OBSERVERS = 3

# Share of redundant points that makes a keyframe redundant.
_REDUNDANCY_RATIO = 0.9


def map_point_culling(recent_points: Iterable[Any], current_keyframe_id: int, monocular: bool) -> list[Any]:
    """Check recently created map points and return those still under probation.

    Points that are found too rarely, or that lack observations two keyframes
    after their creation, are flagged bad. Points that survived three
    keyframes leave the list without being touched.
    """
    min_observations = _MONOCULAR_MIN_OBSERVATIONS if monocular else _STEREO_MIN_OBSERVATIONS
    kept: list[Any] = []
    for point in recent_points:
        if point.is_bad():
            continue
        age = current_keyframe_id - point.first_kf_id
        if point.found_ratio() < _MIN_FOUND_RATIO:
            point.set_bad_flag()
        elif age >= 2 and point.observation_count() <= min_observations:
            point.set_bad_flag()
        elif age >= 3:
            continue
        else:
            kept.append(point)
    return kept


def _is_redundant(point: Any, keyframe: Any, idx: int) -> bool:
    if point.observation_count() <= _REDUNDANT_OBSERVERS:
        return False
    level = keyframe.keys_un[idx].octave
    observers = 0
    for other, other_idx in point.observations().items():
        if other is keyframe:
            continue
        if other.keys_un[other_idx].octave <= level + 1:
            observers += 1
            if observers >= _REDUNDANT_OBSERVERS:
                return True
    return False


def keyframe_culling(current_keyframe: Any, monocular: bool) -> list[Any]:
    """Flag bad the covisible keyframes whose points are mostly seen elsewhere.

    A keyframe is redundant when more than 90% of its map points are seen by
    at least three other keyframes at the same or a finer scale. Without a
    monocular camera only close points (valid depth up to the depth threshold)
    are considered. The first keyframe is never culled. Returns the keyframes
    that were flagged.
    """
    culled: list[Any] = []
    for keyframe in current_keyframe.vector_covisible_keyframes():
        if keyframe.id == 0:
            continue
        n_points = 0
        n_redundant = 0
        for idx, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not monocular:
                depth = keyframe.depth[idx]
                if depth > keyframe.th_depth or depth < 0:
                    continue
            n_points += 1
            if _is_redundant(point, keyframe, idx):
                n_redundant += 1
        if n_redundant > _REDUNDANCY_RATIO * n_points:
            keyframe.set_bad_flag()
            culled.append(keyframe)
    return culled