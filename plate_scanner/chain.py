"""
chain.py — Fallback chain of detector strategies.

The chain owns an ordered list of Detector objects (most capable first)
and exactly one "active" index into it.

  initialize()    walk the list from the top; first strategy that comes
                  up becomes active.  ChainExhaustedError if none does.
  detect(frame)   delegate to the active strategy.  None passes straight
                  through ("nothing found" is normal).  An exception
                  disposes the strategy and demotes to the next one that
                  initialises; this attempt then returns None.  The
                  optional timeout bounds the strategy call only, so a
                  timed-out call never demotes and a slow demotion is
                  never cut short.
  reinitialize()  the ONLY way back up the list — an explicit operator
                  retry starts again from the top.

Demotion only ever moves down the list.  It happens after the failing
call has returned, so the active strategy never changes under an
in-flight attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .detectors import Detector
from .errors import ChainExhaustedError, DetectionTimeout, DetectorInitError
from .frame import Frame
from .results import DetectionResult, DetectorCapability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Demotion:
    from_name: str
    to_name: Optional[str]  # None = chain exhausted
    reason: str


class FallbackChainManager:
    """Pick, run and demote detector strategies.

    Args:
        detectors: Strategies in preference order (see build_detectors).
    """

    def __init__(self, detectors: Sequence[Detector]):
        if not detectors:
            raise ValueError("FallbackChainManager needs at least one detector")
        self._detectors: List[Detector] = list(detectors)
        self._index: Optional[int] = None
        self._exhausted = False
        self.demotions: List[Demotion] = []

    # ------------------------------------------------------------------ #
    #  Introspection
    # ------------------------------------------------------------------ #

    @property
    def detectors(self) -> List[Detector]:
        return list(self._detectors)

    @property
    def active_index(self) -> Optional[int]:
        return self._index

    @property
    def active(self) -> Optional[Detector]:
        return None if self._index is None else self._detectors[self._index]

    @property
    def capability(self) -> Optional[DetectorCapability]:
        det = self.active
        return det.capability if det else None

    @property
    def ready(self) -> bool:
        det = self.active
        return det is not None and det.ready

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self) -> Detector:
        """Make a strategy ready without moving up the list.

        First call starts from the top.  Later calls bring back the
        current strategy (e.g. after dispose()).
        """
        if self._exhausted:
            raise ChainExhaustedError("All detector strategies have failed")
        det = self.active
        if det is not None and det.ready:
            return det
        return await self._activate_from(self._index or 0)

    async def reinitialize(self) -> Detector:
        """Explicit retry: dispose the active strategy and start from the top."""
        await self.dispose()
        self._index = None
        self._exhausted = False
        logger.info("Re-initialising detector chain from the top")
        return await self._activate_from(0)

    async def dispose(self):
        """Release the active strategy (the chain keeps its position)."""
        det = self.active
        if det is None:
            return
        try:
            await det.dispose()
        except Exception:
            logger.exception("Error disposing detector %s", det.name)

    # ------------------------------------------------------------------ #
    #  Detection
    # ------------------------------------------------------------------ #

    async def detect(
        self, frame: Frame, timeout: Optional[float] = None
    ) -> Optional[DetectionResult]:
        """Run the active strategy on *frame*.

        Args:
            timeout: Seconds the strategy call may take.  Demotion after
                     a failed call is not covered by it.

        Raises:
            DetectionTimeout: the strategy call took longer than *timeout*;
                the strategy stays active.
            ChainExhaustedError: no strategy is left (now or after this
                attempt's demotion).
        """
        det = self.active
        if det is None or self._exhausted:
            raise ChainExhaustedError("No active detector strategy")

        try:
            return await self._call(det, frame, timeout)
        except DetectionTimeout:
            raise
        except Exception as exc:
            logger.warning("Detector %s failed: %s", det.name, exc)
            await self._demote(det, exc)
            return None

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    async def _call(
        self, det: Detector, frame: Frame, timeout: Optional[float]
    ) -> Optional[DetectionResult]:
        if timeout is None:
            return await det.detect(frame)
        try:
            return await asyncio.wait_for(det.detect(frame), timeout)
        except asyncio.TimeoutError:
            raise DetectionTimeout(
                f"Detection attempt timed out after {timeout:.1f}s"
            ) from None

    async def _demote(self, failed: Detector, reason: Exception):
        # Release the broken strategy before loading the next one
        try:
            await failed.dispose()
        except Exception:
            logger.exception("Error disposing detector %s", failed.name)

        try:
            # Strictly below the failed one
            det = await self._activate_from(self._detectors.index(failed) + 1)
        except ChainExhaustedError:
            self.demotions.append(Demotion(failed.name, None, str(reason)))
            logger.error("Detector chain exhausted after %s failed", failed.name)
            raise

        self.demotions.append(Demotion(failed.name, det.name, str(reason)))
        logger.warning("Demoted detector %s → %s", failed.name, det.name)

    async def _activate_from(self, start: int) -> Detector:
        errors = []
        for i in range(start, len(self._detectors)):
            det = self._detectors[i]
            try:
                await det.initialize()
            except DetectorInitError as exc:
                logger.warning("Detector %s unavailable: %s", det.name, exc)
                errors.append(f"{det.name}: {exc}")
                continue
            self._index = i
            logger.info("Active detector: %s", det.name)
            return det

        # Nothing left; only reinitialize() clears this
        self._index = None
        self._exhausted = True
        raise ChainExhaustedError(
            "No detector strategy could be initialised"
            + (f" ({'; '.join(errors)})" if errors else "")
        )
