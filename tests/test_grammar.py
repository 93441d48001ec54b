"""
test_grammar.py — Unit tests for plate-grammar validation.

Run with:
    python3 -m pytest tests/test_grammar.py -v

Pure-logic tests: no camera, model or Tesseract needed.
"""

import pickle

import pytest

from plate_scanner.grammar import (
    PlateString,
    match_grammar,
    normalize_text,
    same_plate,
    validate,
)


# ── Normalisation tests ──────────────────────────────────────────────── #

class TestNormalize:

    def test_spaces_and_hyphens(self):
        assert normalize_text("GR 1234-20") == "GR123420"

    def test_lowercase(self):
        assert normalize_text("gr123420") == "GR123420"

    def test_junk(self):
        assert normalize_text("G.R!1@2#3$4%2^0") == "GR123420"

    def test_empty_and_none(self):
        assert normalize_text("") == ""
        assert normalize_text(None) == ""


# ── Grammar matching ─────────────────────────────────────────────────── #

class TestGrammarMatch:

    @pytest.mark.parametrize("text,expected", [
        ("GR123420", "standard"),
        ("AS123419", "standard"),
        ("GR12320", "short"),
        ("GTA12321", "three_letter"),
    ])
    def test_known_grammars(self, text, expected):
        name, _, _ = match_grammar(text)
        assert name == expected

    def test_groups(self):
        _, matched, groups = match_grammar("GR123420")
        assert matched == "GR123420"
        assert groups == ("GR", "1234", "20")

    @pytest.mark.parametrize("text", ["XYZZY", "123456", "GR12", "ABCD1234", ""])
    def test_no_match(self, text):
        assert match_grammar(text) is None

    def test_confusion_swap(self):
        # Trailing letter O where the year digit 0 belongs
        _, matched, _ = match_grammar("GR12342O")
        assert matched == "GR123420"

    def test_swaps_can_be_disabled(self):
        assert match_grammar("GR12342O", allow_swaps=False) is None

    def test_only_one_swap(self):
        # Two confusions at once are not repaired
        assert match_grammar("GR1234ZO") is None


# ── validate() ───────────────────────────────────────────────────────── #

class TestValidate:

    def test_space_separated_plate(self):
        assert validate("GR1234 20") == "GR-1234-20"

    def test_rejects_garbage(self):
        assert validate("XYZZY") is None

    @pytest.mark.parametrize("raw,expected", [
        ("gr-1234-20", "GR-1234-20"),
        ("AS 123 19", "AS-123-19"),
        ("GTA 123-21", "GTA-123-21"),
        (" GR1234-2O ", "GR-1234-20"),
    ])
    def test_canonical_form(self, raw, expected):
        assert validate(raw) == expected

    def test_returns_plate_string(self):
        plate = validate("GR1234 20")
        assert isinstance(plate, PlateString)
        assert plate.grammar == "standard"
        assert plate.compact == "GR123420"

    @pytest.mark.parametrize("raw", ["", "   ", "XYZZY", "ABCDEFGH", "12345678"])
    def test_rejected_text_never_becomes_plate_string(self, raw):
        assert not isinstance(validate(raw), PlateString)

    def test_plate_string_cannot_be_built_directly(self):
        with pytest.raises(TypeError):
            PlateString("GR-1234-20", "standard")

    def test_plate_string_survives_pickle(self):
        plate = validate("GR1234 20")
        copy = pickle.loads(pickle.dumps(plate))
        assert copy == plate
        assert copy.grammar == "standard"


class TestSamePlate:

    def test_ignores_separators(self):
        assert same_plate("GR 1234-20", "gr-1234-20")

    def test_different(self):
        assert not same_plate("GR-1234-20", "GR-1234-21")

    def test_empty_never_matches(self):
        assert not same_plate("", "")
