"""The shared map: the sets of keyframes and map points built so far."""

from __future__ import annotations

import threading
from typing import Any


class SlamMap:
    """Thread-safe container of keyframes and map points.

    Keyframes must expose an integer ``id`` attribute. Insertion order is
    kept, so listings are deterministic.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_points: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self.keyframe_origins: list[Any] = []
        # Held while the map is being corrected (loop closure, global BA).
        self.map_update_lock = threading.RLock()
        # Keeps two points created in separate threads from sharing an id.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: list[Any]) -> None:
        with self._lock:
            self._reference_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record a large map change such as a loop closure or global BA."""
        with self._lock:
            self._big_change_index += 1

    def last_big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop every keyframe and map point; the big-change index is kept."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_points = []
            self.keyframe_origins.clear()