"""Local mapping: takes new keyframes, links their points and culls the map."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Optional

from slamgraph import culling

logger = logging.getLogger(__name__)


class LocalMapping:
    """Queue of new keyframes plus the state used to pause, reset and finish mapping."""

    def __init__(self, slam_map: Any, monocular: bool) -> None:
        self.slam_map = slam_map
        self.monocular = bool(monocular)
        self.loop_closer: Any = None
        self.current_keyframe: Optional[Any] = None
        self.recent_map_points: list[Any] = []
        # Read by the bundle adjustment to know it should stop early.
        self.abort_ba = False

        self._new_keyframes: deque[Any] = deque()
        self._queue_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._accept_lock = threading.Lock()
        self._reset_cond = threading.Condition()

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._accept_keyframes = True

    def set_loop_closer(self, loop_closer: Any) -> None:
        self.loop_closer = loop_closer

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        with self._queue_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._queue_lock:
            return len(self._new_keyframes)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> Any:
        """Take the oldest queued keyframe, attach its map points and add it to the map."""
        with self._queue_lock:
            if not self._new_keyframes:
                raise LookupError("no keyframe waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for idx, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, idx)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_map_points.append(point)

        keyframe.update_connections()
        self.slam_map.add_keyframe(keyframe)
        return keyframe

    def _require_current(self) -> Any:
        if self.current_keyframe is None:
            raise LookupError("no keyframe has been processed yet")
        return self.current_keyframe

    def map_point_culling(self) -> None:
        """Cull recently added map points against the current keyframe."""
        current = self._require_current()
        self.recent_map_points = culling.map_point_culling(
            self.recent_map_points, current.id, self.monocular
        )

    def keyframe_culling(self) -> list[Any]:
        """Cull redundant keyframes covisible with the current one."""
        return culling.keyframe_culling(self._require_current(), self.monocular)

    # Stop and release

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._queue_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is not forbidden."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def release(self) -> None:
        """Resume after a stop, discarding queued keyframes; ignored once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._queue_lock:
                self._new_keyframes.clear()
            logger.info("Local Mapping RELEASE")

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails when already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = flag
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # Accepting keyframes

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = flag

    # Reset

    def request_reset(self) -> None:
        """Ask the mapping thread to reset and block until it has done so."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if not self._reset_requested:
                return
            with self._queue_lock:
                self._new_keyframes.clear()
            self.recent_map_points = []
            self._reset_requested = False
            self._reset_cond.notify_all()

    # Finish

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished