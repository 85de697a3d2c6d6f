"""Loop closing: a queue of keyframes checked for loops against the database."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Optional

from slamgraph.loop_detection import LoopDetector


class LoopClosing:
    """Receives keyframes from local mapping and looks for consistent loop candidates."""

    # Consecutive keyframes a candidate group must hold before a loop is accepted.
    COVISIBILITY_CONSISTENCY_THRESHOLD = 3

    def __init__(self, slam_map: Any, keyframe_db: Any, vocabulary: Any, fix_scale: bool) -> None:
        self.slam_map = slam_map
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)
        self.local_mapper: Any = None
        self.current_keyframe: Optional[Any] = None
        self.detector = LoopDetector(
            keyframe_db, vocabulary, self.COVISIBILITY_CONSISTENCY_THRESHOLD
        )

        self._queue: deque[Any] = deque()
        self._queue_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._reset_cond = threading.Condition()

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True

    def set_local_mapper(self, local_mapper: Any) -> None:
        self.local_mapper = local_mapper

    @property
    def last_loop_kf_id(self) -> int:
        return self.detector.last_loop_kf_id

    @property
    def enough_consistent_candidates(self) -> list[Any]:
        return list(self.detector.enough_consistent_candidates)

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe for loop detection; the first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def detect_loop(self) -> bool:
        """Take the oldest queued keyframe and tell whether it has consistent loop candidates."""
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe waiting for loop detection")
            keyframe = self._queue.popleft()
            # Keep the keyframe from being erased while it is processed here.
            keyframe.set_not_erase()
        self.current_keyframe = keyframe
        return bool(self.detector.detect(keyframe))

    # Reset

    def request_reset(self) -> None:
        """Ask the loop closing thread to reset and block until it has done so."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset_cond:
            if not self._reset_requested:
                return
            with self._queue_lock:
                self._queue.clear()
            self.detector.reset()
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

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished