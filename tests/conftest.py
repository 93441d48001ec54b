"""Shared fixtures: a default config with fast scan timings."""

import pytest

from plate_scanner.config import DEFAULT_CONFIG, _deep_copy
from plate_scanner.results import LookupResult


@pytest.fixture
def config():
    """Default config, tuned so scanner tests finish in milliseconds."""
    cfg = _deep_copy(DEFAULT_CONFIG)
    cfg["scan"].update({
        "interval_seconds": 0.01,
        "initial_delay_seconds": 0.0,
        "attempt_timeout_seconds": 0.5,
    })
    cfg["ocr"]["max_blur_variance"] = 0.0
    cfg["storage"]["log_file"] = ""
    return cfg


@pytest.fixture
def registered():
    """Lookup registry with one known vehicle."""
    return {
        "GR-1234-20": LookupResult(
            plate="GR-1234-20", make="Toyota", model="Corolla", year=2018,
            owner_name="Kwame Mensah", registration_status="active",
            outstanding_violations=2,
        )
    }
