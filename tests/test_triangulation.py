import numpy as np
import pytest

from slamgraph.triangulation import compute_f12, skew_symmetric_matrix, triangulate_linear

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


def _rot_y(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _pose(rotation, translation):
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


class _PosedKeyFrame:
    def __init__(self, pose, calibration=K):
        self._pose = pose
        self.calibration = calibration

    def rotation(self):
        return self._pose[:3, :3].copy()

    def translation(self):
        return self._pose[:3, 3].copy()


POSE1 = _pose(np.eye(3), [0.0, 0.0, 0.0])
POSE2 = _pose(_rot_y(0.1), [-0.5, 0.05, 0.1])
WORLD_POINTS = [
    np.array([0.3, -0.2, 4.0]),
    np.array([-1.0, 0.5, 6.0]),
    np.array([0.0, 0.0, 3.0]),
]


def _camera_point(pose, point):
    return pose[:3, :3] @ point + pose[:3, 3]


def _normalized(pose, point):
    pc = _camera_point(pose, point)
    return np.array([pc[0] / pc[2], pc[1] / pc[2], 1.0])


def _pixel(pose, point):
    pc = _camera_point(pose, point)
    return K @ (pc / pc[2])


def test_skew_symmetric_matches_cross_product():
    v = np.array([1.0, 2.0, 3.0])
    w = np.array([4.0, 5.0, 6.0])
    assert np.allclose(skew_symmetric_matrix(v) @ w, np.cross(v, w))


def test_skew_symmetric_is_antisymmetric():
    m = skew_symmetric_matrix([0.7, -1.5, 2.25])
    assert np.allclose(m, -m.T)
    assert np.allclose(np.diag(m), 0.0)


def test_skew_symmetric_rejects_wrong_length():
    with pytest.raises(ValueError):
        skew_symmetric_matrix([1.0, 2.0])


@pytest.mark.parametrize("point", WORLD_POINTS)
def test_fundamental_matrix_satisfies_epipolar_constraint(point):
    f12 = compute_f12(_PosedKeyFrame(POSE1), _PosedKeyFrame(POSE2))
    x1 = _pixel(POSE1, point)
    x2 = _pixel(POSE2, point)
    assert abs(x1 @ f12 @ x2) < 1e-9


def test_fundamental_matrix_is_rank_deficient():
    f12 = compute_f12(_PosedKeyFrame(POSE1), _PosedKeyFrame(POSE2))
    assert np.linalg.matrix_rank(f12, tol=1e-12) == 2


def test_fundamental_matrix_of_same_pose_vanishes():
    kf = _PosedKeyFrame(POSE2)
    assert np.allclose(compute_f12(kf, kf), 0.0)


@pytest.mark.parametrize("point", WORLD_POINTS)
def test_triangulation_recovers_point(point):
    result = triangulate_linear(
        _normalized(POSE1, point), _normalized(POSE2, point), POSE1[:3], POSE2[:3]
    )
    assert result is not None
    assert np.allclose(result, point, atol=1e-8)


def test_triangulation_accepts_full_poses_and_two_coordinates():
    point = WORLD_POINTS[0]
    result = triangulate_linear(
        _normalized(POSE1, point)[:2], _normalized(POSE2, point)[:2], POSE1, POSE2
    )
    assert np.allclose(result, point, atol=1e-8)


def test_triangulation_rejects_bad_pose_shape():
    with pytest.raises(ValueError):
        triangulate_linear([0.0, 0.0, 1.0], [0.0, 0.0, 1.0], np.eye(3), POSE2)