"""
test_camera.py — Frames and the still-image camera source.

Run with:
    python3 -m pytest tests/test_camera.py -v

The live OpenCV/picamera2 source needs hardware and is not exercised here.
"""

import cv2
import numpy as np
import pytest

from fakes import plate_image
from plate_scanner.camera import ImageFileSource, OpenCVCameraSource, build_camera
from plate_scanner.errors import CameraError, CameraErrorKind
from plate_scanner.frame import Frame
from plate_scanner.results import BoundingBox


class TestFrame:

    def test_pixels_are_read_only(self):
        frame = Frame.from_array(plate_image())
        with pytest.raises(ValueError):
            frame.pixels[0, 0] = 1

    def test_source_buffer_is_copied(self):
        img = plate_image()
        frame = Frame.from_array(img, timestamp=12.5, source="cam")
        img[:] = 7
        assert frame.pixels.max() == 255
        assert frame.timestamp == 12.5
        assert frame.source == "cam"
        assert (frame.width, frame.height) == (640, 480)

    def test_empty_image_rejected(self):
        with pytest.raises(ValueError):
            Frame.from_array(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_crop_is_clamped_and_writable(self):
        frame = Frame.from_array(plate_image())
        crop = frame.crop(BoundingBox(600, 450, 100, 100))
        assert crop.shape == (30, 40, 3)
        crop[:] = 1  # no error: it's a copy

    def test_copy_pixels(self):
        frame = Frame.from_array(plate_image())
        copy = frame.copy_pixels()
        copy[:] = 0
        assert frame.pixels.max() == 255


class TestImageFileSource:

    @pytest.fixture
    def images(self, tmp_path):
        paths = []
        for i, box in enumerate([(200, 300, 150, 40), (100, 100, 150, 40)]):
            p = tmp_path / f"car{i}.png"
            cv2.imwrite(str(p), plate_image(box=box))
            paths.append(str(p))
        return paths

    def test_cycles_through_images(self, images):
        src = ImageFileSource(images)
        src.start_camera()
        assert src.is_active
        sources = [src.get_current_frame().source for _ in range(3)]
        assert sources == [images[0], images[1], images[0]]

    def test_frames_match_files(self, images):
        src = ImageFileSource(images[:1])
        src.start_camera()
        frame = src.get_current_frame()
        assert np.array_equal(frame.pixels, plate_image())

    def test_no_frame_before_start_or_after_stop(self, images):
        src = ImageFileSource(images)
        assert src.get_current_frame() is None
        src.start_camera()
        src.stop_camera()
        assert not src.is_active
        assert src.get_current_frame() is None

    def test_missing_file(self, tmp_path):
        src = ImageFileSource([str(tmp_path / "nope.jpg")])
        with pytest.raises(CameraError) as err:
            src.start_camera()
        assert err.value.kind is CameraErrorKind.DEVICE_NOT_FOUND

    def test_undecodable_file(self, tmp_path):
        p = tmp_path / "junk.jpg"
        p.write_bytes(b"definitely not a jpeg")
        with pytest.raises(CameraError) as err:
            ImageFileSource([str(p)]).start_camera()
        assert err.value.kind is CameraErrorKind.UNSUPPORTED

    def test_no_paths(self):
        with pytest.raises(CameraError) as err:
            ImageFileSource([]).start_camera()
        assert err.value.kind is CameraErrorKind.DEVICE_NOT_FOUND


class TestCameraError:

    @pytest.mark.parametrize("kind", list(CameraErrorKind))
    def test_every_kind_has_a_hint(self, kind):
        err = CameraError(kind)
        assert err.hint
        assert str(err) == err.hint

    def test_custom_message_keeps_hint(self):
        err = CameraError(CameraErrorKind.DEVICE_BUSY, "opened but returned no frame")
        assert "returned no frame" in str(err)
        assert "another application" in err.hint


class TestBuildCamera:

    def test_images_give_still_source(self, config):
        assert isinstance(build_camera(config, ["a.jpg"]), ImageFileSource)

    def test_default_is_live_camera(self, config):
        cam = build_camera(config)
        assert isinstance(cam, OpenCVCameraSource)
        assert not cam.is_active
        assert cam.get_current_frame() is None
