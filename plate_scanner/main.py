"""
main.py — Headless host for plate-scanner.

Ties the modules together:

  Camera ─► ScanOrchestrator ─► FallbackChainManager ─► active Detector
                 │                   remote vision / custom model /
                 │                   generic model / heuristics
                 └─► VehicleLookup ─► ScanOutcome ─► log / listeners

Everything runs on one asyncio event loop.  Blocking work (camera open,
OCR, ONNX inference, HTTP) is pushed into worker threads so the loop
stays responsive; the camera has its own capture thread.

Usage
─────
  # Continuous scanning until Ctrl-C:
  python -m plate_scanner.main -c config.yaml

  # Analyse still images once each and exit:
  python -m plate_scanner.main --image car1.jpg car2.jpg

  # Check the environment:
  python -m plate_scanner.main --diagnose
"""

import argparse
import asyncio
import logging
import signal
from typing import Optional, Sequence

from .camera import build_camera
from .chain import FallbackChainManager
from .config import load_config
from .detectors import build_detectors
from .diagnostics import log_diagnostics
from .errors import PlateScannerError
from .lookup import build_lookup
from .results import ScanOutcome, ScanStatus
from .scanner import ScanOrchestrator
from .storage import EvidenceStorage

logger = logging.getLogger("plate-scanner")


def setup_logging(cfg: dict):
    """Configure Python logging with console + file handlers."""
    lvl_name = cfg["storage"].get("log_level", "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s  %(name)-18s  %(levelname)-7s  %(message)s"
    )

    root = logging.getLogger()
    root.setLevel(lvl)

    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(sh)

    log_file = cfg["storage"].get("log_file")
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(fmt)
        root.addHandler(fh)


class PlateScannerApp:
    """Top-level application object — builds components and runs a session.

    Args:
        config_path: Path to config.yaml (or None for auto-discovery).
        images:      Still images to analyse instead of the live camera.
    """

    def __init__(self, config_path=None, images: Optional[Sequence[str]] = None):
        self.cfg = load_config(config_path)
        setup_logging(self.cfg)

        self.images = list(images or [])
        if self.images:
            # One-shot mode: each image is analysed by an explicit capture
            self.cfg["scan"]["auto_scan"] = False

        self.camera = build_camera(self.cfg, self.images)
        self.chain = FallbackChainManager(build_detectors(self.cfg))
        self.lookup = build_lookup(self.cfg)
        self.storage = EvidenceStorage(self.cfg) if self.cfg["storage"]["enabled"] else None

        self.scanner = ScanOrchestrator(
            self.camera, self.chain, self.lookup, self.cfg, storage=self.storage,
        )
        self.scanner.add_listener(self._on_outcome)
        self._stop_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------ #
    #  Entry points
    # ------------------------------------------------------------------ #

    async def run(self, duration: Optional[float] = None) -> int:
        """Scan until SIGINT/SIGTERM (or *duration* seconds).  Returns exit code."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._sig, sig)
            except NotImplementedError:
                pass  # Windows: Ctrl-C still raises KeyboardInterrupt

        logger.info("=== plate-scanner starting ===")
        logger.info("Detectors: %s", ", ".join(self.cfg["detectors"]["order"]))
        logger.info("Lookup API: %s", self.cfg["lookup"]["api_url"])

        try:
            await self.scanner.start()
        except PlateScannerError as exc:
            logger.error("Cannot start scanner: %s", exc)
            return 1

        try:
            if self.images:
                for _ in self.images:
                    await self.scanner.capture()
            elif duration:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), duration)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._stop_event.wait()
        finally:
            await self.shutdown()
        return 0 if self.scanner.last_error is None else 1

    async def shutdown(self):
        logger.info("Shutting down …")
        await self.scanner.stop()
        await self.chain.dispose()
        logger.info("=== plate-scanner stopped ===")

    # ------------------------------------------------------------------ #
    #  Helpers
    # ------------------------------------------------------------------ #

    def _on_outcome(self, outcome: ScanOutcome):
        if outcome.status is ScanStatus.NO_PLATE_DETECTED and outcome.source == "scan":
            return  # silent during continuous scanning
        line = f"{outcome.source.upper():8s} {outcome.status.value:18s} {outcome.plate or '-'}"
        if outcome.vehicle_info:
            line += f"  {outcome.vehicle_info.vehicle_model}  owner={outcome.vehicle_info.owner_name}"
        if outcome.message:
            line += f"  ({outcome.message})"
        logger.info("RESULT  %s", line)

    def _sig(self, signum):
        logger.info("Signal %d received — shutting down", signum)
        if self._stop_event is not None:
            self._stop_event.set()


# ═══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ═══════════════════════════════════════════════════════════════════════════

def main(argv=None) -> int:
    """Parse command-line arguments and run the application."""
    ap = argparse.ArgumentParser(description="Licence-plate scanner")
    ap.add_argument(
        "-c", "--config",
        default=None,
        help="Path to config.yaml (default: auto-discover)",
    )
    ap.add_argument(
        "--image", nargs="+", metavar="PATH",
        help="Analyse these still images once each instead of the camera",
    )
    ap.add_argument(
        "--duration", type=float, default=None, metavar="SECONDS",
        help="Stop continuous scanning after this many seconds",
    )
    ap.add_argument(
        "--diagnose", action="store_true",
        help="Print a detection-environment report and exit",
    )
    args = ap.parse_args(argv)

    if args.diagnose:
        cfg = load_config(args.config)
        setup_logging(cfg)
        log_diagnostics(cfg)
        return 0

    app = PlateScannerApp(args.config, images=args.image)
    return asyncio.run(app.run(duration=args.duration))


if __name__ == "__main__":
    raise SystemExit(main())
