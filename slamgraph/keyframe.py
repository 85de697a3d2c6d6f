"""Keyframes: frames kept in the map, linked by covisibility and a spanning tree."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import numpy as np

GRID_COLS = 64
GRID_ROWS = 48

# Minimum number of shared map points for a covisibility edge.
_COVISIBILITY_THRESHOLD = 15


class KeyPointLike(Protocol):
    """An undistorted or raw keypoint: image position and pyramid level."""

    x: float
    y: float
    octave: int


def _empty_grid() -> list[list[list[int]]]:
    return [[[] for _ in range(GRID_ROWS)] for _ in range(GRID_COLS)]


@dataclass
class FrameData:
    """Everything a keyframe takes over from the frame it is built from."""

    frame_id: int = 0
    timestamp: float = 0.0
    fx: float = 1.0
    fy: float = 1.0
    cx: float = 0.0
    cy: float = 0.0
    bf: float = 0.0
    b: float = 0.0
    th_depth: float = 0.0
    keys: list[Any] = field(default_factory=list)
    keys_un: list[Any] = field(default_factory=list)
    uright: list[float] = field(default_factory=list)
    depth: list[float] = field(default_factory=list)
    descriptors: Any = None
    bow_vec: dict[int, float] = field(default_factory=dict)
    feat_vec: dict[int, list[int]] = field(default_factory=dict)
    scale_levels: int = 1
    scale_factor: float = 1.2
    scale_factors: list[float] = field(default_factory=list)
    level_sigma2: list[float] = field(default_factory=list)
    inv_level_sigma2: list[float] = field(default_factory=list)
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_element_width_inv: float = GRID_COLS / 640.0
    grid_element_height_inv: float = GRID_ROWS / 480.0
    grid: list[list[list[int]]] = field(default_factory=_empty_grid)
    calibration: Any = field(default_factory=lambda: np.eye(3))
    map_points: list[Any] = field(default_factory=list)
    vocabulary: Any = None
    tcw: Any = field(default_factory=lambda: np.eye(4))

    def __post_init__(self) -> None:
        n = len(self.keys_un)
        if not self.keys:
            self.keys = list(self.keys_un)
        if not self.uright:
            self.uright = [-1.0] * n
        if not self.depth:
            self.depth = [-1.0] * n
        if not self.map_points:
            self.map_points = [None] * n
        if not self.scale_factors:
            self.scale_factors = [self.scale_factor**i for i in range(self.scale_levels)]
        if not self.level_sigma2:
            self.level_sigma2 = [s * s for s in self.scale_factors]
        if not self.inv_level_sigma2:
            self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

    @property
    def log_scale_factor(self) -> float:
        return math.log(self.scale_factor)


def _ordered_by_weight(pairs: Sequence[tuple[int, "KeyFrame"]]) -> tuple[list["KeyFrame"], list[int]]:
    ordered = sorted(pairs, key=lambda p: (p[0], p[1].id), reverse=True)
    return [kf for _, kf in ordered], [w for w, _ in ordered]


class KeyFrame:
    """A frame stored in the map, with its pose, map points and graph links."""

    _ids = itertools.count()

    def __init__(self, frame: FrameData, slam_map: Any, keyframe_db: Any = None) -> None:
        self._pose_lock = threading.RLock()
        self._conn_lock = threading.RLock()
        self._feat_lock = threading.RLock()

        self.id = next(KeyFrame._ids)
        self.frame_id = frame.frame_id
        self.timestamp = frame.timestamp

        self.grid_cols = GRID_COLS
        self.grid_rows = GRID_ROWS
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv
        self._grid = [[list(cell) for cell in column] for column in frame.grid]

        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: Optional[np.ndarray] = None
        self.tcw_bef_gba: Optional[np.ndarray] = None

        self.fx = frame.fx
        self.fy = frame.fy
        self.cx = frame.cx
        self.cy = frame.cy
        self.invfx = 1.0 / frame.fx
        self.invfy = 1.0 / frame.fy
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth

        self.num_features = len(frame.keys_un)
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.uright = list(frame.uright)
        self.depth = list(frame.depth)
        self.descriptors = None if frame.descriptors is None else np.array(frame.descriptors, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x = frame.min_x
        self.min_y = frame.min_y
        self.max_x = frame.max_x
        self.max_y = frame.max_y
        self.calibration = np.array(frame.calibration, dtype=np.float64)

        self._map_points: list[Any] = list(frame.map_points)
        self.keyframe_db = keyframe_db
        self.vocabulary = frame.vocabulary
        self.slam_map = slam_map
        self.half_baseline = frame.b / 2

        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: Optional[KeyFrame] = None
        self._children: dict[KeyFrame, None] = {}
        self._loop_edges: dict[KeyFrame, None] = {}

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False
        self.tcp: Optional[np.ndarray] = None

        self.set_pose(frame.tcw)

    # Pose

    def set_pose(self, tcw: Any) -> None:
        pose = np.array(tcw, dtype=np.float64).reshape(4, 4)
        with self._pose_lock:
            self._tcw = pose
            rcw = pose[:3, :3]
            t = pose[:3, 3]
            rwc = rcw.T
            self._ow = -rwc @ t
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            center = np.array([self.half_baseline, 0.0, 0.0, 1.0])
            self._cw = (twc @ center)[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the point half a baseline to the right of the camera."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: "KeyFrame", weight: int) -> None:
        with self._conn_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        with self._conn_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_connected, self._ordered_weights = _ordered_by_weight(pairs)

    def connected_keyframes(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._connected_weights)

    def vector_covisible_keyframes(self) -> list["KeyFrame"]:
        with self._conn_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list["KeyFrame"]:
        with self._conn_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w: int) -> list["KeyFrame"]:
        """Covisible keyframes with weight at least ``w``.

        As in the reference behaviour, nothing is returned when every
        connection reaches ``w``.
        """
        with self._conn_lock:
            for n, weight in enumerate(self._ordered_weights):
                if w > weight:
                    return list(self._ordered_connected[:n])
            return []

    def weight(self, keyframe: "KeyFrame") -> int:
        with self._conn_lock:
            return self._connected_weights.get(keyframe, 0)

    def erase_connection(self, keyframe: "KeyFrame") -> None:
        with self._conn_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with other keyframes."""
        with self._feat_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        nmax = 0
        kf_max: Optional[KeyFrame] = None
        pairs: list[tuple[int, KeyFrame]] = []
        for keyframe, count in counter.items():
            if count > nmax:
                nmax = count
                kf_max = keyframe
            if count >= _COVISIBILITY_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs and kf_max is not None:
            pairs.append((nmax, kf_max))
            kf_max.add_connection(self, nmax)

        ordered, weights = _ordered_by_weight(pairs)

        with self._conn_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Map point associations

    def add_map_point(self, point: Any, idx: int) -> None:
        with self._feat_lock:
            self._map_points[idx] = point

    def erase_map_point_match(self, idx: int) -> None:
        with self._feat_lock:
            self._map_points[idx] = None

    def erase_map_point(self, point: Any) -> None:
        idx = point.index_in_keyframe(self)
        if idx >= 0:
            with self._feat_lock:
                self._map_points[idx] = None

    def replace_map_point_match(self, idx: int, point: Any) -> None:
        with self._feat_lock:
            self._map_points[idx] = point

    def map_points(self) -> set[Any]:
        with self._feat_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Good map points, counting only those with at least ``min_obs`` observations if positive."""
        with self._feat_lock:
            points = [p for p in self._map_points if p is not None and not p.is_bad()]
        if min_obs > 0:
            return sum(1 for p in points if p.observation_count() >= min_obs)
        return len(points)

    def map_point_matches(self) -> list[Any]:
        with self._feat_lock:
            return list(self._map_points)

    def map_point(self, idx: int) -> Any:
        with self._feat_lock:
            return self._map_points[idx]

    # Spanning tree and loop edges

    def add_child(self, keyframe: "KeyFrame") -> None:
        with self._conn_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: "KeyFrame") -> None:
        with self._conn_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: "KeyFrame") -> None:
        with self._conn_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    def children(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._children)

    def parent(self) -> Optional["KeyFrame"]:
        with self._conn_lock:
            return self._parent

    def has_child(self, keyframe: "KeyFrame") -> bool:
        with self._conn_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: "KeyFrame") -> None:
        with self._conn_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._loop_edges)

    # Erasure

    def set_not_erase(self) -> None:
        with self._conn_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._conn_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the map and the database.

        The first keyframe is never removed; a keyframe protected by
        ``set_not_erase`` is only marked to be removed once released.
        """
        with self._conn_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        with self._feat_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._conn_lock, self._feat_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            parent = self._parent
            candidates: list[KeyFrame] = [parent] if parent is not None else []

            # Give each child, one at a time, the candidate parent it shares most with.
            while self._children:
                best_weight = -1
                best_child: Optional[KeyFrame] = None
                best_parent: Optional[KeyFrame] = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for connected_kf in child.vector_covisible_keyframes():
                        for candidate in candidates:
                            if connected_kf.id == candidate.id:
                                w = child.weight(connected_kf)
                                if w > best_weight:
                                    best_child = child
                                    best_parent = connected_kf
                                    best_weight = w
                if best_child is None or best_parent is None:
                    break
                best_child.change_parent(best_parent)
                candidates.append(best_child)
                del self._children[best_child]

            if parent is not None:
                for child in list(self._children):
                    child.change_parent(parent)
                parent.erase_child(self)
                with self._pose_lock:
                    self.tcp = self._tcw @ parent.pose_inverse()
            self._bad = True

        self.slam_map.erase_keyframe(self)
        if self.keyframe_db is not None:
            self.keyframe_db.erase(self)

    def is_bad(self) -> bool:
        with self._conn_lock:
            return self._bad

    # Geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints within ``r`` of (x, y) on both axes."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return []

        indices: list[int] = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for idx in self._grid[ix][iy]:
                    kp = self.keys_un[idx]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(idx)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> Optional[np.ndarray]:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        x = (kp.x - self.cx) * z * self.invfx
        y = (kp.y - self.cy) * z * self.invfy
        point_cam = np.array([x, y, z], dtype=np.float64)
        with self._pose_lock:
            return self._twc[:3, :3] @ point_cam + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int = 2) -> float:
        """The depth at position (n-1)//q among the sorted depths of the map points."""
        with self._feat_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        rcw2 = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(rcw2 @ np.asarray(p.world_pos(), dtype=np.float64).reshape(3) + zcw)
            for p in points
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]