"""
test_ocr.py — OCR preprocessing and the extract/validate flow.

Run with:
    python3 -m pytest tests/test_ocr.py -v

Tesseract is never called: a fake OcrEngine stands in for it, so these
tests only need numpy and opencv.
"""

import numpy as np
import pytest

from fakes import FakeOcrEngine
from plate_scanner.errors import DetectorRuntimeError
from plate_scanner.grammar import PlateString
from plate_scanner.ocr import OcrEngine, PlateReader


@pytest.fixture
def engine():
    return FakeOcrEngine()


@pytest.fixture
def reader(config, engine):
    return PlateReader(config, engine=engine)


class TestBlur:
    """Tests for blur_score() — Laplacian variance sharpness metric."""

    def test_sharp_image(self, reader):
        img = np.random.randint(0, 255, (60, 200), dtype=np.uint8)
        assert reader.blur_score(img) > 100

    def test_flat_image(self, reader):
        img = np.full((60, 200), 128, dtype=np.uint8)
        assert reader.blur_score(img) < 1


class TestPreprocess:

    def test_output_shape(self, reader):
        plate = np.random.randint(0, 255, (30, 120, 3), dtype=np.uint8)
        out = reader.preprocess(plate)
        # 3× upscale plus a 10 px border on each side
        assert out.shape == (30 * 3 + 20, 120 * 3 + 20)

    def test_grayscale_input(self, reader):
        plate = np.random.randint(0, 255, (40, 160), dtype=np.uint8)
        out = reader.preprocess(plate)
        assert out.ndim == 2

    def test_does_not_modify_input(self, reader):
        plate = np.random.randint(0, 255, (40, 160, 3), dtype=np.uint8)
        before = plate.copy()
        reader.preprocess(plate)
        assert np.array_equal(plate, before)

    def test_read_only_input(self, reader):
        plate = np.random.randint(0, 255, (40, 160, 3), dtype=np.uint8)
        plate.setflags(write=False)
        assert reader.preprocess(plate).size > 0

    def test_empty_returns_as_is(self, reader):
        empty = np.array([], dtype=np.uint8)
        assert reader.preprocess(empty).size == 0

    def test_output_is_binary_with_white_border(self, reader):
        plate = np.random.randint(0, 255, (30, 100), dtype=np.uint8)
        out = reader.preprocess(plate)
        assert out[0].min() == 255 and out[:, 0].min() == 255

    def test_background_comes_out_white(self, reader):
        # Dark crop with thin light strokes still gives a light page
        plate = np.zeros((40, 160), dtype=np.uint8)
        plate[10:30, 20:24] = 255
        plate[10:30, 60:64] = 255
        out = reader.preprocess(plate)
        inner = out[10:-10, 10:-10]
        assert np.count_nonzero(inner) / inner.size > 0.5


class TestExtract:

    def test_returns_cleaned_text(self, reader):
        engine = FakeOcrEngine(text="gr 1234-20!", confidence=0.8)
        reader.engine = engine
        result = reader.extract(np.full((40, 160, 3), 200, dtype=np.uint8))
        assert result.text == "GR1234-20"
        assert result.confidence == pytest.approx(0.8)
        assert len(engine.images) == 1

    def test_short_text_is_rejected(self, reader):
        reader.engine = FakeOcrEngine(text="GR1")
        assert reader.extract(np.zeros((40, 160), dtype=np.uint8)) is None

    def test_no_text(self, reader):
        reader.engine = FakeOcrEngine(text=None)
        assert reader.extract(np.zeros((40, 160), dtype=np.uint8)) is None

    def test_empty_region(self, reader, engine):
        assert reader.extract(np.array([], dtype=np.uint8)) is None
        assert engine.images == []

    def test_blurry_region_skips_ocr(self, config, engine):
        config["ocr"]["max_blur_variance"] = 100.0
        reader = PlateReader(config, engine=engine)
        assert reader.extract(np.full((40, 160), 128, dtype=np.uint8)) is None
        assert engine.images == []

    def test_engine_error_is_no_text(self, reader):
        reader.engine = FakeOcrEngine(error=ValueError("garbled"))
        assert reader.extract(np.zeros((40, 160), dtype=np.uint8)) is None

    def test_broken_engine_propagates(self, reader):
        reader.engine = FakeOcrEngine(error=DetectorRuntimeError("gone"))
        with pytest.raises(DetectorRuntimeError):
            reader.extract(np.zeros((40, 160), dtype=np.uint8))

    def test_confidence_clamped(self, reader):
        reader.engine = FakeOcrEngine(text="GR123420", confidence=1.7)
        assert reader.extract(np.zeros((40, 160), dtype=np.uint8)).confidence == 1.0


class TestReadPlate:

    def test_valid_plate(self, reader):
        plate, ocr = reader.read_plate(np.zeros((40, 160), dtype=np.uint8))
        assert isinstance(plate, PlateString)
        assert plate == "GR-1234-20"
        assert ocr.text == "GR1234-20"

    def test_invalid_text_is_not_a_plate(self, reader):
        reader.engine = FakeOcrEngine(text="XYZZYX")
        assert reader.read_plate(np.zeros((40, 160), dtype=np.uint8)) is None


class TestEngineInterface:

    def test_engine_without_recognize_is_rejected(self):
        class CheckOnly(OcrEngine):
            def check(self):
                return "1.0"

        with pytest.raises(TypeError):
            CheckOnly()

    def test_base_engine_is_abstract(self):
        with pytest.raises(TypeError):
            OcrEngine()
