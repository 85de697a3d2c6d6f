"""Map, keyframe graph, keyframe database, culling and loop detection for visual SLAM."""

__version__ = "0.1.0"
__all__ = [
    "culling",
    "keyframe",
    "keyframe_database",
    "local_mapping",
    "loop_closing",
    "loop_detection",
    "map_point",
    "slam_map",
    "triangulation",
]