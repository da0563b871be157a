"""
main.py — Driver Alert Pipeline Entry Point
Replays a landmark recording through one pipeline per driver.

Input: JSON lines, one LandmarkFrame per line
  {"driverId": "d1", "timestamp": 12.033, "landmarks": [[x, y], ...] | null}

Pipeline per frame (per driver):
  1. DMSCore.process()            → EAR, motion, state, episode, alerts
  2. DispatchWorker.submit()      → store + notifier, off the frame loop
  3. InCabAlarm.update()          → local audible alarm
  4. AlertServer.publish_frame()  → live JSON → HUD subscribers

Usage:
  python main.py --replay drive.jsonl
  python main.py --replay drive.jsonl --realtime --serve
  python main.py --replay drive.jsonl --store-url http://fleet:5050
"""

import argparse
import json
import sys
import time
from typing import Dict, Iterator, Optional

import config
from alerts.alert_dispatcher import AlertDispatcher, DispatchWorker, LoggingNotifier
from alerts.alert_store import HttpAlertStore, InMemoryAlertStore
from alerts.audio_alarm import InCabAlarm
from dms_engine.data_structures import DriverContext, FrameResult, LandmarkFrame
from dms_engine.dms_core import DMSCore
from dms_engine.frame_pump import FramePump
from server.alert_server import AlertServer, SocketIONotifier
from core.logger import get_logger, set_console_level

log = get_logger("main")


# ──────────────────────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Driver Alert Pipeline")
    p.add_argument("--replay",     required=True,
                   help="JSON-lines landmark recording to replay.")
    p.add_argument("--realtime",   action="store_true",
                   help="Pace frames by timestamp through a FramePump (drops if behind).")
    p.add_argument("--fps",        type=float, default=None,
                   help="Override frame pacing; ignores recorded timestamps spacing.")
    p.add_argument("--serve",      action="store_true",
                   help="Run the alert server in-process (in-memory store + socket notifier).")
    p.add_argument("--store-url",  default=config.ALERT_STORE_URL,
                   help="Remote /driver-alerts base URL (default: $DMS_ALERT_STORE_URL).")
    p.add_argument("--trip-id",    default=None)
    p.add_argument("--bus-id",     default=None)
    p.add_argument("--route-id",   default=None)
    p.add_argument("--no-audio",   action="store_true",
                   help="Disable the in-cab alarm.")
    p.add_argument("--debug",      action="store_true",
                   help="Enable verbose debug output.")
    return p.parse_args(argv)


def read_frames(path: str) -> Iterator[LandmarkFrame]:
    """Yield frames from a JSON-lines recording, skipping blank lines."""
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield LandmarkFrame.from_dict(json.loads(line))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning(f"{path}:{lineno}: skipping malformed frame ({exc})")


# ──────────────────────────────────────────────────────────────────────────────
# Replay runner
# ──────────────────────────────────────────────────────────────────────────────

class ReplayRunner:
    """
    Owns the per-driver pipelines and the shared dispatch machinery.
    """

    def __init__(self, args):
        self.args = args
        self.server: Optional[AlertServer] = None

        if args.debug:
            config.DEBUG_MODE = True
            set_console_level(10)

        if args.serve:
            self.server = AlertServer(InMemoryAlertStore())
            store, notifier = self.server.store, SocketIONotifier(self.server)
        elif args.store_url:
            store, notifier = HttpAlertStore(args.store_url), LoggingNotifier()
        else:
            store, notifier = InMemoryAlertStore(), LoggingNotifier()

        self.store = store
        self.worker = DispatchWorker(AlertDispatcher(store, notifier))
        self.alarm = None if args.no_audio else InCabAlarm()

        self._cores: Dict[str, DMSCore] = {}
        self._pumps: Dict[str, FramePump] = {}
        self._alert_count = 0

    # ── Per-driver pipelines ──────────────────────────────────────────────────

    def _core_for(self, driver_id: str) -> DMSCore:
        core = self._cores.get(driver_id)
        if core is None:
            context = DriverContext(driver_id)
            core = DMSCore(context, dispatch_fn=self._submit)
            core.start_trip(self.args.trip_id, self.args.bus_id, self.args.route_id)
            self._cores[driver_id] = core
            if self.args.realtime:
                pump = FramePump(core, on_result=self._on_result)
                pump.start()
                self._pumps[driver_id] = pump
        return core

    def _submit(self, alert):
        self._alert_count += 1
        future = self.worker.submit(alert)
        future.add_done_callback(_log_dispatch_failure)
        return future

    def _on_result(self, result: FrameResult) -> None:
        if self.alarm is not None:
            self.alarm.update(result.escalation_level)
        if self.server is not None:
            self.server.publish_frame(result)
        if config.DEBUG_MODE:
            log.debug(
                f"[{result.driver_id}] t={result.timestamp:.3f} | "
                f"EAR={result.ear:.3f} | motion={result.motion:.2f} | "
                f"{result.driver_state.value if result.driver_state else 'INVALID'} | "
                f"closed={result.closed_duration:.2f}s | {result.escalation_level}"
            )

    # ── Main loop ─────────────────────────────────────────────────────────────

    def run(self) -> int:
        self.worker.start()
        if self.alarm is not None:
            self.alarm.start()
        if self.server is not None:
            self.server.start_background()

        last_ts: Optional[float] = None
        wall_start = time.perf_counter()
        first_ts: Optional[float] = None
        index = 0

        try:
            for frame in read_frames(self.args.replay):
                core = self._core_for(frame.driver_id)

                if not self.args.realtime:
                    result = core.process(frame)
                    if result is not None:
                        self._on_result(result)
                    last_ts = frame.timestamp
                    continue

                # ── Pace by recorded timestamps (or --fps) ────────────────
                if first_ts is None:
                    first_ts = frame.timestamp
                offset = (index / self.args.fps) if self.args.fps else (frame.timestamp - first_ts)
                delay = offset - (time.perf_counter() - wall_start)
                if delay > 0:
                    time.sleep(delay)
                self._pumps[frame.driver_id].push_frame(frame)
                last_ts = frame.timestamp
                index += 1

        except KeyboardInterrupt:
            log.info("KeyboardInterrupt, shutting down.")
        finally:
            self._shutdown(last_ts)
        return 0

    def _shutdown(self, last_ts: Optional[float]) -> None:
        log.info("Releasing resources …")
        for pump in self._pumps.values():
            pump.stop()
        for core in self._cores.values():
            core.end_trip(last_ts if last_ts is not None else time.time())
        self.worker.stop()
        if self.alarm is not None:
            self.alarm.stop()
        if self.server is not None:
            self.server.stop()

        dropped = sum(c.dropped_count for c in self._cores.values())
        dropped += sum(p.dropped_count for p in self._pumps.values())
        log.info(f"Replay done: {len(self._cores)} driver(s), "
                 f"{sum(c.frame_count for c in self._cores.values())} frames, "
                 f"{dropped} dropped, {self._alert_count} alert(s).")


def _log_dispatch_failure(future) -> None:
    exc = future.exception()
    if exc is not None:
        log.error(f"Alert was not persisted: {exc}")


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────

def main(argv=None) -> int:
    args = parse_args(argv)
    return ReplayRunner(args).run()


if __name__ == "__main__":
    sys.exit(main())
