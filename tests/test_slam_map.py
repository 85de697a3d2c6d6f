import pytest

from slamgraph.slam_map import SlamMap


class _KeyFrame:
    def __init__(self, kf_id):
        self.id = kf_id


class _Point:
    pass


@pytest.fixture
def slam_map():
    return SlamMap()


def test_add_keyframe_tracks_max_id(slam_map):
    slam_map.add_keyframe(_KeyFrame(3))
    slam_map.add_keyframe(_KeyFrame(7))
    slam_map.add_keyframe(_KeyFrame(5))
    assert slam_map.max_keyframe_id() == 7
    assert slam_map.keyframes_in_map() == 3


def test_empty_map(slam_map):
    assert slam_map.max_keyframe_id() == 0
    assert slam_map.all_keyframes() == []
    assert slam_map.all_map_points() == []
    assert slam_map.last_big_change_index() == 0


def test_adding_same_keyframe_twice_counts_once(slam_map):
    kf = _KeyFrame(1)
    slam_map.add_keyframe(kf)
    slam_map.add_keyframe(kf)
    assert slam_map.all_keyframes() == [kf]


def test_erase_keyframe(slam_map):
    a, b = _KeyFrame(1), _KeyFrame(2)
    slam_map.add_keyframe(a)
    slam_map.add_keyframe(b)
    slam_map.erase_keyframe(a)
    assert slam_map.all_keyframes() == [b]
    slam_map.erase_keyframe(a)
    assert slam_map.keyframes_in_map() == 1


def test_map_points_add_and_erase(slam_map):
    p, q = _Point(), _Point()
    slam_map.add_map_point(p)
    slam_map.add_map_point(q)
    assert slam_map.all_map_points() == [p, q]
    slam_map.erase_map_point(p)
    assert slam_map.all_map_points() == [q]
    assert slam_map.map_points_in_map() == 1


def test_reference_points_are_copied(slam_map):
    points = [_Point(), _Point()]
    slam_map.set_reference_map_points(points)
    points.append(_Point())
    assert len(slam_map.reference_map_points()) == 2


def test_big_change_index_increments(slam_map):
    slam_map.inform_new_big_change()
    slam_map.inform_new_big_change()
    assert slam_map.last_big_change_index() == 2


def test_clear_resets_contents_but_not_big_change(slam_map):
    kf = _KeyFrame(4)
    slam_map.add_keyframe(kf)
    slam_map.add_map_point(_Point())
    slam_map.set_reference_map_points([_Point()])
    slam_map.keyframe_origins.append(kf)
    slam_map.inform_new_big_change()
    slam_map.clear()
    assert slam_map.keyframes_in_map() == 0
    assert slam_map.map_points_in_map() == 0
    assert slam_map.reference_map_points() == []
    assert slam_map.keyframe_origins == []
    assert slam_map.max_keyframe_id() == 0
    assert slam_map.last_big_change_index() == 1