"""
scanner.py — Scan orchestrator: camera lifecycle, scan loop, capture.

State machine
─────────────
                 start()                 camera up
    IDLE ───────────────► CAMERA_STARTING ──────────► CAMERA_ACTIVE
     ▲                          │                       │     ▲   │
     │ stop() (from anywhere)   │ CameraError           │auto │   │ capture()
     │                          ▼                       ▼     │   ▼
     └────────────────────── ERROR ◄──── chain     SCANNING   │ CAPTURING
                                         exhausted   ▲  │     │   │
                                                     │  ▼     │   ▼
                                                   ANALYZING ─┴─ ANALYZING

  - SCANNING: every ``interval_seconds`` grab the current frame and run
    one attempt (ANALYZING).  The next interval only starts once the
    attempt has resolved, so attempts never overlap.
  - Each detector call is bounded by ``attempt_timeout_seconds``; a
    timed-out attempt is dropped and counts as "no plate".  A demotion
    after a failed call always runs to completion.
  - capture() pauses scanning (letting an attempt in flight finish first),
    freezes one frame, analyses it once and returns to CAMERA_ACTIVE
    whatever the result.
  - stop() releases the camera and cancels the loop or a pending capture.
    An attempt that is already ANALYZING finishes and is still published.

Only camera errors and an exhausted detector chain put the orchestrator
in ERROR; everything else becomes a ScanOutcome.
"""

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from .camera import CameraSource
from .chain import FallbackChainManager
from .config import thresholds_for
from .detectors import passes_gate
from .errors import ChainExhaustedError, DetectionTimeout, ScanStateError
from .frame import Frame
from .grammar import PlateString, validate
from .lookup import VehicleLookup
from .results import DetectionResult, ScanOutcome, ScanState, ScanStatus
from .storage import EvidenceStorage

logger = logging.getLogger(__name__)

S = ScanState

# IDLE and ERROR are reachable from every state and are not listed.
_TRANSITIONS = {
    S.IDLE: {S.CAMERA_STARTING},
    S.ERROR: {S.CAMERA_STARTING},
    S.CAMERA_STARTING: {S.CAMERA_ACTIVE},
    S.CAMERA_ACTIVE: {S.SCANNING, S.CAPTURING},
    S.SCANNING: {S.ANALYZING, S.CAMERA_ACTIVE},
    S.ANALYZING: {S.SCANNING, S.CAMERA_ACTIVE},
    S.CAPTURING: {S.ANALYZING, S.CAMERA_ACTIVE},
}


@dataclass
class ScanStats:
    attempts: int = 0
    detections: int = 0
    gated_out: int = 0
    timeouts: int = 0
    lookup_errors: int = 0
    published: int = 0
    last_detection_at: Optional[float] = None


class ScanOrchestrator:
    """Drive the camera, the detector chain and the vehicle lookup.

    Args:
        camera:  CameraSource owned exclusively by this orchestrator.
        chain:   FallbackChainManager for this session.
        lookup:  VehicleLookup collaborator.
        config:  Full app config dict — we read "scan", "grammar" and
                 "detectors".
        storage: Optional EvidenceStorage for manual captures.
    """

    def __init__(
        self,
        camera: CameraSource,
        chain: FallbackChainManager,
        lookup: VehicleLookup,
        config: dict,
        storage: Optional[EvidenceStorage] = None,
    ):
        cfg = config["scan"]
        self.camera = camera
        self.chain = chain
        self.lookup = lookup
        self.storage = storage
        self.config = config

        self.auto_scan: bool = cfg["auto_scan"]
        self.interval: float = cfg["interval_seconds"]
        self.initial_delay: float = cfg["initial_delay_seconds"]
        self.attempt_timeout: float = cfg["attempt_timeout_seconds"]
        self.stats_every: int = cfg["stats_every"]
        self.allow_swaps: bool = config["grammar"]["allow_swaps"]

        self._state = ScanState.IDLE
        self._scanning = False
        self._stopping = False
        self._loop_task: Optional[asyncio.Task] = None
        self._attempt_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None

        self._listeners: List[Callable] = []
        self._state_listeners: List[Callable] = []

        self.last_outcome: Optional[ScanOutcome] = None
        self.last_detection: Optional[ScanOutcome] = None
        self.last_error: Optional[BaseException] = None
        self.stats = ScanStats()

    # ------------------------------------------------------------------ #
    #  Observers
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def scanning(self) -> bool:
        return self._scanning

    def add_listener(self, callback: Callable):
        """``callback(outcome)`` for every published ScanOutcome (sync or async)."""
        self._listeners.append(callback)

    def add_state_listener(self, callback: Callable):
        """``callback(old, new)`` on every state change (sync)."""
        self._state_listeners.append(callback)

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    async def start(self):
        """Acquire the camera, ready the detector chain, start scanning.

        Raises:
            CameraError: the camera could not be started.
            ChainExhaustedError: no detector strategy is usable.
        """
        if self._state not in (S.IDLE, S.ERROR):
            raise ScanStateError(f"Cannot start while {self._state.value}")

        self._stopping = False
        self._set_state(S.CAMERA_STARTING)
        # Camera first: without frames there is nothing to detect on
        try:
            await asyncio.to_thread(self.camera.start_camera)
        except Exception as exc:
            self._fail(exc)
            raise

        try:
            await self.chain.initialize()
        except ChainExhaustedError as exc:
            await self._release_camera()
            self._fail(exc)
            raise

        self.last_error = None
        self._set_state(S.CAMERA_ACTIVE)
        logger.info(
            "Scanner ready  camera=%s  detector=%s",
            self.camera.name, self.chain.active.name,
        )

        # Rotate evidence once per session rather than per capture
        if self.storage is not None:
            await asyncio.to_thread(self.storage.cleanup)

        if self.auto_scan:
            await self.start_scanning()

    async def stop(self):
        """Stop everything and return to IDLE.

        An attempt that is already analysing is awaited and its outcome
        published; nothing starts after it.
        """
        self._stopping = True
        self._scanning = False

        # Loop first, so no new attempt starts while we tear down
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        # A capture that has not reached ANALYZING yet is simply dropped
        if self._capture_task is not None and self._state is S.CAPTURING:
            self._capture_task.cancel()

        await self._release_camera()

        me = asyncio.current_task()
        pending = [
            t for t in (self._attempt_task, self._capture_task)
            if t is not None and not t.done() and t is not me
        ]
        if pending:
            logger.info("Waiting for in-flight analysis before stopping")
            await asyncio.gather(*pending, return_exceptions=True)
        self._attempt_task = None
        self._capture_task = None

        self.last_detection = None  # a new session starts with a blank screen
        if self._state is not S.IDLE:
            self._set_state(S.IDLE)
        self._log_stats()

    async def retry(self):
        """Operator retry: stop, re-promote the detector chain, start again."""
        await self.stop()
        try:
            await self.chain.reinitialize()
        except ChainExhaustedError as exc:
            self._fail(exc)
            raise
        await self.start()

    # ------------------------------------------------------------------ #
    #  Continuous scanning
    # ------------------------------------------------------------------ #

    async def start_scanning(self):
        if self._state is S.SCANNING or self._scanning:
            return
        if self._state is not S.CAMERA_ACTIVE:
            raise ScanStateError(f"Cannot scan while {self._state.value}")
        self._scanning = True
        self._set_state(S.SCANNING)
        self._loop_task = asyncio.create_task(self._scan_loop(), name="scan-loop")
        logger.info("Continuous scanning started (every %.1fs)", self.interval)

    async def stop_scanning(self):
        """Pause scanning; waits for an attempt in progress."""
        if not self._scanning and self._loop_task is None:
            return
        self._scanning = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        task = self._attempt_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        self._attempt_task = None

        if self._state is S.SCANNING:
            self._set_state(S.CAMERA_ACTIVE)
        logger.info("Continuous scanning paused")

    async def _scan_loop(self):
        try:
            await asyncio.sleep(self.initial_delay)
            while self._scanning:
                self._attempt_task = asyncio.create_task(self._scan_attempt(), name="scan-attempt")
                # Shielded: cancelling the loop must not abort the analysis
                await asyncio.shield(self._attempt_task)
                self._attempt_task = None
                if self._state is S.ERROR:
                    break
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.debug("Scan loop cancelled")
            raise

    async def _scan_attempt(self):
        frame = self.camera.get_current_frame()
        if frame is None:
            logger.debug("No frame available yet")
            return

        self._set_state(S.ANALYZING)
        try:
            outcome = await self._analyze(frame, "scan")
        except ChainExhaustedError as exc:
            self._scanning = False
            await self._release_camera()
            self._fail(exc)
            return

        await self._publish(outcome)
        if self._state is S.ANALYZING and not self._stopping:
            self._set_state(S.SCANNING if self._scanning else S.CAMERA_ACTIVE)

    # ------------------------------------------------------------------ #
    #  Manual capture / lookup
    # ------------------------------------------------------------------ #

    async def capture(self) -> Optional[ScanOutcome]:
        """Freeze the current frame and analyse it once.

        Returns:
            The published ScanOutcome, or None if stop() cancelled the
            capture before analysis began.
        """
        if self._capture_task is not None:
            raise ScanStateError("A capture is already in progress")
        if self._state not in (S.CAMERA_ACTIVE, S.SCANNING, S.ANALYZING):
            raise ScanStateError(f"Cannot capture while {self._state.value}")

        await self.stop_scanning()
        # The attempt we waited for may have failed the chain
        if self._state is not S.CAMERA_ACTIVE:
            raise ScanStateError(f"Cannot capture while {self._state.value}")
        self._set_state(S.CAPTURING)

        task = asyncio.create_task(self._capture_flow(), name="capture")
        self._capture_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                logger.info("Capture cancelled")
                return None
            raise
        finally:
            if self._capture_task is task:
                self._capture_task = None

    async def _capture_flow(self) -> ScanOutcome:
        frame = self.camera.get_current_frame()
        # Yield once so a stop() issued right now can still cancel us
        await asyncio.sleep(0)

        if frame is None:
            outcome = ScanOutcome(
                ScanStatus.NO_PLATE_DETECTED, source="capture",
                message="No frame available from camera",
            )
            await self._publish(outcome)
            if not self._stopping:
                self._set_state(S.CAMERA_ACTIVE)
            return outcome

        self._set_state(S.ANALYZING)
        try:
            outcome = await self._analyze(frame, "capture")
        except ChainExhaustedError as exc:
            await self._release_camera()
            self._fail(exc)
            raise

        if self.storage is not None:
            try:
                await asyncio.to_thread(self.storage.save, frame, outcome)
            except OSError as exc:
                logger.error("Could not save capture evidence: %s", exc)

        await self._publish(outcome)
        if not self._stopping:
            self._set_state(S.CAMERA_ACTIVE)
        return outcome

    async def lookup_plate(self, text: str) -> ScanOutcome:
        """Look up a plate typed in by the operator."""
        plate = validate(text, allow_swaps=False)
        if plate is None:
            outcome = ScanOutcome(
                ScanStatus.NO_PLATE_DETECTED, source="manual",
                message=f"'{text}' is not a valid plate number",
            )
        else:
            outcome = await self._resolve(plate, None, "manual")
        await self._publish(outcome)
        return outcome

    # ------------------------------------------------------------------ #
    #  Analysis
    # ------------------------------------------------------------------ #

    async def _analyze(self, frame: Frame, source: str) -> ScanOutcome:
        self.stats.attempts += 1
        # Periodic STATS line, every N attempts
        if self.stats_every and self.stats.attempts % self.stats_every == 0:
            self._log_stats()

        try:
            result = await self.chain.detect(frame, timeout=self.attempt_timeout)
        except DetectionTimeout as exc:
            self.stats.timeouts += 1
            logger.warning("%s", exc)
            return ScanOutcome(ScanStatus.NO_PLATE_DETECTED, source=source, message=str(exc))

        if result is None:
            return ScanOutcome(ScanStatus.NO_PLATE_DETECTED, source=source)

        # Each strategy has its own confidence scale, hence its own gate

        thresholds = thresholds_for(self.config, result.capability.value)
        if not passes_gate(result, thresholds):
            self.stats.gated_out += 1
            logger.debug(
                "Below %s gate: %s det=%.2f ocr=%.2f",
                result.capability.value, result.plate,
                result.detection_confidence, result.ocr_confidence,
            )
            return ScanOutcome(
                ScanStatus.NO_PLATE_DETECTED, source=source, message="Low confidence",
            )

        self.stats.detections += 1
        self.stats.last_detection_at = frame.timestamp
        logger.info(
            "PLATE  %-11s  det=%.2f  ocr=%.2f  via=%s",
            result.plate, result.detection_confidence,
            result.ocr_confidence, result.capability.value,
        )
        return await self._resolve(result.plate, result, source)

    async def _resolve(
        self, plate: PlateString, detection: Optional[DetectionResult], source: str
    ) -> ScanOutcome:
        """Look *plate* up and turn the answer into an outcome."""
        try:
            info = await self.lookup.lookup(plate)
        except Exception as exc:
            self.stats.lookup_errors += 1
            logger.warning("Lookup failed for %s: %s", plate, exc)
            return ScanOutcome(
                ScanStatus.DETECTION_ERROR, plate=plate, detection=detection,
                source=source, message=f"Vehicle lookup failed: {exc}",
            )

        if info is None:
            return ScanOutcome(
                ScanStatus.NOT_REGISTERED, plate=plate, detection=detection,
                source=source, message="Not Registered",
            )
        return ScanOutcome(
            ScanStatus.REGISTERED, plate=plate, vehicle_info=info,
            detection=detection, source=source, message=info.violation_summary,
        )

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    async def _publish(self, outcome: ScanOutcome):
        self.last_outcome = outcome
        # last_detection only moves on outcomes that carry a plate
        if outcome.plate:
            self.last_detection = outcome
        self.stats.published += 1

        for cb in list(self._listeners):
            try:
                res = cb(outcome)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception("Outcome listener failed")

    def _set_state(self, new: ScanState):
        old = self._state
        if new is old:
            return
        if new not in (S.IDLE, S.ERROR) and new not in _TRANSITIONS[old]:
            raise ScanStateError(f"Illegal transition {old.value} → {new.value}")
        self._state = new
        logger.debug("State %s → %s", old.value, new.value)
        for cb in list(self._state_listeners):
            try:
                cb(old, new)
            except Exception:
                logger.exception("State listener failed")

    def _fail(self, exc: BaseException):
        self.last_error = exc
        self._scanning = False
        logger.error("Scanner error: %s", exc)
        self._set_state(S.ERROR)

    async def _release_camera(self):
        try:
            await asyncio.to_thread(self.camera.stop_camera)
        except Exception:
            logger.exception("Error releasing camera")

    def _log_stats(self):
        logger.info(
            "STATS  %s  demotions=%d  detector=%s",
            "  ".join(f"{k}={v}" for k, v in asdict(self.stats).items() if k != "last_detection_at"),
            len(self.chain.demotions),
            self.chain.active.name if self.chain.active else "none",
        )
