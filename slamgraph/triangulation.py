"""Two-view geometry used when creating new map points."""

from __future__ import annotations

from typing import Any, Optional, Protocol

import numpy as np


class PosedKeyFrame(Protocol):
    """What the two-view computations need from a keyframe."""

    calibration: Any

    def rotation(self) -> np.ndarray: ...

    def translation(self) -> np.ndarray: ...


def _vector3(value: Any) -> np.ndarray:
    vec = np.asarray(value, dtype=np.float64).reshape(-1)
    if vec.shape != (3,):
        raise ValueError("expected a 3-vector")
    return vec


def _projection(tcw: Any) -> np.ndarray:
    matrix = np.asarray(tcw, dtype=np.float64)
    if matrix.shape not in ((3, 4), (4, 4)):
        raise ValueError("pose must be a 3x4 or 4x4 matrix")
    return matrix[:3, :]


def skew_symmetric_matrix(v: Any) -> np.ndarray:
    """The matrix ``[v]x`` such that ``[v]x @ w`` equals ``v x w``."""
    x, y, z = _vector3(v)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1: PosedKeyFrame, keyframe2: PosedKeyFrame) -> np.ndarray:
    """Fundamental matrix F12 with ``x1^T F12 x2 = 0`` for matching pixels."""
    r1w = np.asarray(keyframe1.rotation(), dtype=np.float64).reshape(3, 3)
    t1w = _vector3(keyframe1.translation())
    r2w = np.asarray(keyframe2.rotation(), dtype=np.float64).reshape(3, 3)
    t2w = _vector3(keyframe2.translation())

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    t12x = skew_symmetric_matrix(t12)

    k1 = np.asarray(keyframe1.calibration, dtype=np.float64).reshape(3, 3)
    k2 = np.asarray(keyframe2.calibration, dtype=np.float64).reshape(3, 3)
    return np.linalg.inv(k1.T) @ t12x @ r12 @ np.linalg.inv(k2)


def triangulate_linear(xn1: Any, xn2: Any, tcw1: Any, tcw2: Any) -> Optional[np.ndarray]:
    """Linear (DLT) triangulation of one match.

    ``xn1`` and ``xn2`` are normalized image coordinates (x, y[, 1]) and
    ``tcw1``/``tcw2`` the world-to-camera poses. Returns the world point, or
    None when the solution lies at infinity.
    """
    p1 = np.asarray(xn1, dtype=np.float64).reshape(-1)
    p2 = np.asarray(xn2, dtype=np.float64).reshape(-1)
    if p1.shape[0] < 2 or p2.shape[0] < 2:
        raise ValueError("normalized coordinates need at least x and y")
    proj1 = _projection(tcw1)
    proj2 = _projection(tcw2)

    a = np.stack(
        [
            p1[0] * proj1[2] - proj1[0],
            p1[1] * proj1[2] - proj1[1],
            p2[0] * proj2[2] - proj2[0],
            p2[1] * proj2[2] - proj2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    solution = vt[3]
    if solution[3] == 0:
        return None
    return solution[:3] / solution[3]