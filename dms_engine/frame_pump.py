# =============================================================================
# dms_engine/frame_pump.py
#
# FramePump — feeds one driver's DMSCore from a live frame source without
# ever queueing stale frames.
#
# Architecture:
#   Source thread:  detector output → push_frame()  (never blocks)
#   Pump thread:    latest frame → DMSCore.process() → on_result callback
#
#   The source writes into a single-slot buffer. If the pump is still busy
#   with the previous frame, the waiting frame is replaced and counted as
#   dropped. Duration tracking therefore only ever sees fresh timestamps.
#
# Thread safety:
#   - The frame slot is protected by threading.Lock()
#   - A threading.Event wakes the pump when a new frame lands
#   - Exactly one pump thread per DMSCore, so frames never overlap
# =============================================================================

import threading
from typing import Callable, Optional

from dms_engine.data_structures import FrameResult, LandmarkFrame
from dms_engine.dms_core import DMSCore
from core.logger import get_logger

log = get_logger(__name__)


class FramePump:
    """
    Usage:
        pump = FramePump(core, on_result=hud.publish_frame)
        pump.start()

        # From the frame source:
        pump.push_frame(frame)

        # On exit:
        pump.stop()

    step() processes the pending frame on the caller's thread, for
    deterministic driving without start().
    """

    def __init__(
        self,
        core: DMSCore,
        on_result: Optional[Callable[[FrameResult], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._core = core
        self._on_result = on_result
        self._on_error = on_error

        # Shared frame slot (source → pump thread)
        self._frame_lock = threading.Lock()
        self._pending: Optional[LandmarkFrame] = None
        self._wake = threading.Event()

        self._pushed_count  = 0
        self._dropped_count = 0

        # Thread control
        self._running = False
        self._thread: Optional[threading.Thread] = None

    # ── Public API ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background pump thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._pump_loop,
            name=f"FramePump-{self._core.context.driver_id}",
            daemon=True,
        )
        self._thread.start()
        log.info(f"FramePump started for driver {self._core.context.driver_id}.")

    def stop(self) -> None:
        """Signal the pump thread to stop and wait for it."""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        self._thread.join(timeout=3.0)
        log.info(f"FramePump stopped ({self._pushed_count} pushed, "
                 f"{self._dropped_count} dropped).")

    def push_frame(self, frame: LandmarkFrame) -> None:
        """
        Hand a frame to the pump. Non-blocking; a frame still waiting from
        the previous push is discarded.
        """
        with self._frame_lock:
            if self._pending is not None:
                self._dropped_count += 1
                log.debug(f"[{frame.driver_id}] Pipeline behind, dropping frame "
                          f"t={self._pending.timestamp:.3f}")
            self._pending = frame
            self._pushed_count += 1
        self._wake.set()

    def step(self) -> Optional[FrameResult]:
        """Process the pending frame, if any, on the calling thread."""
        with self._frame_lock:
            frame = self._pending
            self._pending = None
        if frame is None:
            return None

        try:
            result = self._core.process(frame)
        except Exception as exc:
            log.error(f"FramePump processing error: {exc}", exc_info=True)
            if self._on_error is not None:
                self._on_error(exc)
            return None

        if result is not None and self._on_result is not None:
            self._on_result(result)
        return result

    # ── Background Thread ─────────────────────────────────────────────────────

    def _pump_loop(self) -> None:
        while self._running:
            self._wake.wait(timeout=0.5)
            self._wake.clear()
            self.step()
        # Frames arriving during shutdown are discarded

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    @property
    def pushed_count(self) -> int:
        return self._pushed_count
