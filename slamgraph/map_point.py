"""3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any, Optional, Protocol, Sequence

import numpy as np


class ObservingKeyFrame(Protocol):
    """What a map point needs from a keyframe that observes it."""

    id: int
    frame_id: int
    uright: Sequence[float]
    descriptors: Any
    keys_un: Sequence[Any]
    scale_factors: Sequence[float]
    scale_levels: int
    log_scale_factor: float

    def camera_center(self) -> np.ndarray: ...

    def is_bad(self) -> bool: ...

    def erase_map_point_match(self, idx: int) -> None: ...

    def replace_map_point_match(self, idx: int, point: "MapPoint") -> None: ...


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors given as bytes."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


def _vector3(value: Any) -> np.ndarray:
    vec = np.array(value, dtype=np.float32).reshape(-1)
    if vec.shape != (3,):
        raise ValueError("expected a 3-vector")
    return vec


class MapPoint:
    """A landmark with its observations, descriptor and scale-invariance range."""

    global_lock = threading.Lock()
    _ids = itertools.count()

    def __init__(self, position: Any, reference_keyframe: Optional[ObservingKeyFrame], slam_map: Any) -> None:
        self._lock = threading.RLock()
        self._world_pos = _vector3(position)
        self._normal = np.zeros(3, dtype=np.float32)
        self._descriptor: Optional[np.ndarray] = None
        self._observations: dict[Any, int] = {}
        self._nobs = 0
        self._ref_kf = reference_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: Optional[MapPoint] = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self.slam_map = slam_map

        if reference_keyframe is not None:
            self.first_kf_id = reference_keyframe.id
            self.first_frame = reference_keyframe.frame_id
        else:
            self.first_kf_id = -1
            self.first_frame = 0

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: Optional[np.ndarray] = None

        with slam_map.point_creation_lock:
            self.id = next(MapPoint._ids)

    @classmethod
    def from_observation(
        cls,
        position: Any,
        slam_map: Any,
        camera_center: Any,
        octave: int,
        scale_factors: Sequence[float],
        descriptor: Any,
        frame_id: int,
    ) -> "MapPoint":
        """Create a point seen from a frame, not yet attached to any keyframe."""
        point = cls(position, None, slam_map)
        point.first_frame = frame_id
        offset = point._world_pos - _vector3(camera_center)
        dist = float(np.linalg.norm(offset))
        point._normal = (offset / dist).astype(np.float32)
        point._max_distance = dist * scale_factors[octave]
        point._min_distance = point._max_distance / scale_factors[-1]
        point._descriptor = np.array(descriptor, dtype=np.uint8).ravel()
        return point

    def set_world_pos(self, position: Any) -> None:
        with MapPoint.global_lock, self._lock:
            self._world_pos = _vector3(position)

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    def reference_keyframe(self) -> Optional[ObservingKeyFrame]:
        with self._lock:
            return self._ref_kf

    def add_observation(self, keyframe: ObservingKeyFrame, index: int) -> None:
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._nobs += 2 if keyframe.uright[index] >= 0 else 1

    def erase_observation(self, keyframe: ObservingKeyFrame) -> None:
        """Drop an observation; the point goes bad with two or fewer left."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                idx = self._observations.pop(keyframe)
                self._nobs -= 2 if keyframe.uright[idx] >= 0 else 1
                if self._ref_kf is keyframe:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._nobs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._lock:
            return dict(self._observations)

    def observation_count(self) -> int:
        with self._lock:
            return self._nobs

    def set_bad_flag(self) -> None:
        with self._lock:
            self._bad = True
            obs = self._observations
            self._observations = {}
        for keyframe, idx in obs.items():
            keyframe.erase_map_point_match(idx)
        self.slam_map.erase_map_point(self)

    def replaced(self) -> Optional["MapPoint"]:
        with self._lock:
            return self._replaced

    def replace(self, other: "MapPoint") -> None:
        """Hand every observation over to ``other`` and retire this point."""
        if other.id == self.id:
            return
        with self._lock:
            obs = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, idx in obs.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(idx, other)
                other.add_observation(keyframe, idx)
            else:
                keyframe.erase_map_point_match(idx)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self.slam_map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.array(kf.descriptors[idx], dtype=np.uint8).ravel()
            for kf, idx in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=np.int64)
        for i, j in itertools.combinations(range(n), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = distances[j, i] = d

        median_pos = int(0.5 * (n - 1))
        best_median = math.inf
        best_idx = 0
        for i, row in enumerate(distances):
            median = int(np.sort(row)[median_pos])
            if median < best_median:
                best_median = median
                best_idx = i

        with self._lock:
            self._descriptor = descriptors[best_idx].copy()

    def descriptor(self) -> Optional[np.ndarray]:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe: ObservingKeyFrame) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: ObservingKeyFrame) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_kf = self._ref_kf
            pos = self._world_pos.copy()
        if not observations or ref_kf is None:
            return

        normal = np.zeros(3, dtype=np.float32)
        for keyframe in observations:
            direction = pos - _vector3(keyframe.camera_center())
            normal = normal + direction / np.linalg.norm(direction)

        dist = float(np.linalg.norm(pos - _vector3(ref_kf.camera_center())))
        level = ref_kf.keys_un[observations.get(ref_kf, 0)].octave
        level_scale = ref_kf.scale_factors[level]
        top_scale = ref_kf.scale_factors[ref_kf.scale_levels - 1]

        with self._lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = (normal / len(observations)).astype(np.float32)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear from ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))