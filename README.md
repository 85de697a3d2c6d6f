# slamgraph

This package handles the map bookkeeping for a feature-based visual SLAM system. It is written in plain Python and NumPy.

## Modules

- **`slamgraph.slam_map.SlamMap`** is a thread-safe container of keyframes and map points. It keeps them in insertion order. It also tracks:
  - the largest keyframe id;
  - a list of reference map points;
  - a counter of big map changes (`inform_new_big_change`, `last_big_change_index`).

  `map_update_lock` and `point_creation_lock` are there for callers that coordinate threads.

- **`slamgraph.map_point.MapPoint`** is a 3D landmark. It keeps:
  - its observations (keyframe → keypoint index) and an observation count, where stereo observations count twice;
  - its mean viewing direction;
  - its scale-invariance distances;
  - its most distinctive descriptor.

  It also has:
  - visible and found counters, with `found_ratio`;
  - `replace`, which merges the point into another point;
  - `predict_scale`.

  `MapPoint.from_observation` creates a point seen from a frame that is not yet attached to a keyframe. `descriptor_distance(a, b)` gives the Hamming distance between two binary descriptors.

- **`slamgraph.keyframe`** provides two classes:
  - **`FrameData`** is a dataclass with the per-frame data a keyframe is built from: intrinsics, keypoints, depths, descriptors, bag-of-words vector, scale pyramid, image bounds, keypoint grid and pose.
  - **`KeyFrame`** keeps:
    - its pose;
    - the covisibility graph (`update_connections`, `best_covisibility_keyframes`, `covisibles_by_weight`, …);
    - the spanning-tree parent and children;
    - loop edges;
    - its map point associations;
    - erasure protection (`set_not_erase`, `set_erase`, `set_bad_flag`);
    - grid lookup of keypoints (`features_in_area`);
    - stereo back-projection;
    - median scene depth.

- **`slamgraph.keyframe_database.KeyFrameDatabase`** is an inverted file from visual word to keyframes. It provides `detect_loop_candidates` and `detect_relocalization_candidates`.

- **`slamgraph.culling`** has two functions:
  - `map_point_culling` drops recently created points that are found too rarely or observed too little.
  - `keyframe_culling` flags keyframes as bad when more than 90% of their points are seen by at least three other keyframes.

- **`slamgraph.local_mapping.LocalMapping`** is the local-mapping stage. It provides:
  - a queue of new keyframes;
  - `process_new_keyframe`, which attaches map points, updates connections and adds the keyframe to the map;
  - culling of points and keyframes;
  - the stop, release, reset and finish handshakes used between threads.

- **`slamgraph.triangulation`** provides three functions:
  - `skew_symmetric_matrix`
  - `compute_f12`, the fundamental matrix between two keyframes
  - `triangulate_linear`, linear two-view triangulation

- **`slamgraph.loop_detection`** provides:
  - `LoopDetector`, which keeps `ConsistentGroup`s of candidate keyframes over consecutive keyframes and reports candidates that stay consistent long enough;
  - `min_covisible_score`, which gives the lowest similarity between a keyframe and its covisible keyframes.

- **`slamgraph.loop_closing.LoopClosing`** is the loop-closing stage. It provides:
  - a keyframe queue, where keyframe 0 is never queued;
  - `detect_loop`, which runs the detector;
  - reset and finish control.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np

from slamgraph.keyframe import FrameData, KeyFrame
from slamgraph.map_point import MapPoint
from slamgraph.slam_map import SlamMap
from slamgraph.triangulation import triangulate_linear

slam_map = SlamMap()
keyframe = KeyFrame(FrameData(frame_id=0), slam_map)
slam_map.add_keyframe(keyframe)

point = MapPoint([0.0, 0.0, 2.0], keyframe, slam_map)
slam_map.add_map_point(point)
print(slam_map.keyframes_in_map(), slam_map.map_points_in_map())

tcw1 = np.eye(4)
tcw2 = np.eye(4)
tcw2[0, 3] = -1.0
print(triangulate_linear([0.0, 0.0], [-0.5, 0.0], tcw1, tcw2))  # ~[0, 0, 2]
```

## Conventions

- Poses are 4×4 NumPy arrays in the camera-from-world convention (`Tcw`).
- Positions are 3-vectors.
- Keypoints are any objects with `x`, `y` and `octave` attributes.
- Descriptors are `uint8` arrays.
- Bag-of-words vectors are mappings from word id to weight.

The vocabulary given to `KeyFrameDatabase`, `LoopDetector` and `LoopClosing` must support:

- `len(vocabulary)`, the number of words;
- `vocabulary.score(a, b)`, the similarity of two bag-of-words vectors.

`LocalMapping` reports stops and releases through the standard `logging` module.

## What this package does not do

It is bookkeeping only. It has:

- no tracking front end;
- no feature extraction;
- no descriptor matching;
- no bundle adjustment or pose-graph optimisation;
- no viewer or drawing of the map.

The processing loops are not run for you. `LocalMapping` and `LoopClosing` expose their queues and handshakes, and the caller drives them from its own threads.

`LocalMapping` does not create new map points or fuse duplicates across neighbouring keyframes. `triangulation` provides the two-view geometry such a step would use.

`LoopClosing` detects loop candidates only. It does not estimate a similarity transform, and it does not correct the map after a loop.

Nothing is saved to disk.