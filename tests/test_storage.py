"""
test_storage.py — Evidence files for manual captures and their rotation.

Run with:
    python3 -m pytest tests/test_storage.py -v
"""

import asyncio
import json
import os
import time

import pytest

from fakes import FakeCamera, FakeDetector, FakeLookup, detection, make_frame
from plate_scanner.chain import FallbackChainManager
from plate_scanner.results import DetectorCapability, ScanOutcome, ScanStatus
from plate_scanner.results import ScanState as S
from plate_scanner.scanner import ScanOrchestrator
from plate_scanner.storage import EvidenceStorage


@pytest.fixture
def storage(config, tmp_path):
    config["storage"]["evidence_dir"] = str(tmp_path / "evidence")
    return EvidenceStorage(config)


def day_dir(root, ts):
    return root / time.strftime("%Y%m%d", time.localtime(ts))


class TestSave:

    def test_plate_capture(self, storage):
        out = ScanOutcome(
            ScanStatus.NOT_REGISTERED, plate="GR-1234-20",
            detection=detection(), source="capture", message="Not Registered",
        )
        path = storage.save(make_frame(), out)
        folder = day_dir(storage.root, out.timestamp)
        names = sorted(os.listdir(folder))
        assert len(names) == 3
        assert all("_GR-1234-20_" in n for n in names)
        assert os.path.basename(path) in names

        meta = json.loads(next(folder.glob("*_meta.json")).read_text())
        assert meta["status"] == "not_registered"
        assert meta["plate"] == "GR-1234-20"
        assert meta["detection"]["box"] == {"x": 10, "y": 10, "width": 120, "height": 30}
        assert meta["frame_source"] == "test"

    def test_remote_overlay_is_not_cropped(self, storage):
        out = ScanOutcome(
            ScanStatus.NOT_REGISTERED, plate="GR-1234-20",
            detection=detection(capability=DetectorCapability.REMOTE), source="capture",
        )
        storage.save(make_frame(), out)
        names = os.listdir(day_dir(storage.root, out.timestamp))
        assert not any(n.endswith("_plate.jpg") for n in names)

    def test_no_plate_capture(self, storage):
        out = ScanOutcome(ScanStatus.NO_PLATE_DETECTED, source="capture")
        storage.save(make_frame(), out)
        names = os.listdir(day_dir(storage.root, out.timestamp))
        # No detection box, so no plate crop
        assert len(names) == 2
        assert all("_noplate_" in n for n in names)


class TestCleanup:

    def test_old_days_removed(self, storage):
        old = storage.root / "20000101"
        old.mkdir()
        (old / "x.jpg").write_bytes(b"x")
        stamp = time.time() - 30 * 86400
        os.utime(old, (stamp, stamp))
        fresh = storage.root / "20990101"
        fresh.mkdir()

        storage.cleanup()
        assert not old.exists()
        assert fresh.exists()

    def test_size_limit_removes_oldest(self, storage):
        storage.max_mb = 1
        day = storage.root / "today"
        day.mkdir()
        now = time.time()
        for i in range(3):
            p = day / f"{i}.jpg"
            p.write_bytes(b"\0" * 600 * 1024)
            os.utime(p, (now - 100 + i, now - 100 + i))

        storage.cleanup()
        assert sorted(os.listdir(day)) == ["2.jpg"]

    def test_size_limit_removes_whole_captures(self, storage):
        storage.max_mb = 1
        day = storage.root / "20250601"
        day.mkdir()
        now = time.time()
        old = [day / "100000_GR-1234-20_frame.jpg", day / "100000_GR-1234-20_meta.json"]
        old[0].write_bytes(b"\0" * 700 * 1024)
        old[1].write_text("{}")
        new = day / "120000_AS-123-19_frame.jpg"
        new.write_bytes(b"\0" * 700 * 1024)
        for p in old:
            os.utime(p, (now - 100, now - 100))

        storage.cleanup()
        # The small metadata file goes with its frame
        assert sorted(os.listdir(day)) == [new.name]


class TestScannerIntegration:

    def test_capture_writes_evidence(self, config, storage):
        config["scan"]["auto_scan"] = False
        chain = FallbackChainManager([FakeDetector(config, results=[detection()])])
        sc = ScanOrchestrator(FakeCamera(), chain, FakeLookup(), config, storage)

        async def go():
            await sc.start()
            return await sc.capture()

        out = asyncio.run(go())
        assert len(os.listdir(day_dir(storage.root, out.timestamp))) == 3

    def test_scan_attempts_write_nothing(self, config, storage):
        chain = FallbackChainManager([FakeDetector(config, results=[detection()])])
        sc = ScanOrchestrator(FakeCamera(), chain, FakeLookup(), config, storage)

        async def go():
            await sc.start()
            await asyncio.sleep(0.05)
            await sc.stop()

        asyncio.run(go())
        assert sc.stats.published >= 1
        assert list(storage.root.iterdir()) == []

    def test_stop_during_capture_analysis_still_saves(self, config, storage):
        config["scan"]["auto_scan"] = False
        det = FakeDetector(config, results=[detection()], delay=0.1)
        camera = FakeCamera()
        sc = ScanOrchestrator(camera, FallbackChainManager([det]), FakeLookup(), config, storage)
        outcomes, states = [], []
        sc.add_listener(outcomes.append)
        sc.add_state_listener(lambda old, new: states.append(new))

        async def go():
            await sc.start()
            capture = asyncio.create_task(sc.capture())
            await asyncio.sleep(0.03)
            assert sc.state is S.ANALYZING
            await sc.stop()
            return await capture

        out = asyncio.run(go())
        assert out.status is ScanStatus.NOT_REGISTERED
        assert outcomes == [out]
        assert camera.stops == 1
        assert sc.state is S.IDLE
        # The capture did not move the state after stop()
        assert states[-2:] == [S.ANALYZING, S.IDLE]
        assert len(os.listdir(day_dir(storage.root, out.timestamp))) == 3
