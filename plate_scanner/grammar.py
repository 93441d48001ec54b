"""
grammar.py — Ghana licence-plate validation and canonical formatting.

This module answers two questions:
  1. "Does this OCR text match a known plate layout?"  → match_grammar()
  2. "Give me the canonical plate for it"               → validate()

It does NOT query any database — it only decides whether a string *looks
like* a real registration.

Plate layouts recognised (after stripping spaces and hyphens)
─────────────────────────────────────────────────────────────
  standard:      2 letters + 4 digits + 2 digits    e.g. GR 1234-20
  short:         2 letters + 3 digits + 2 digits    e.g. AS 123-19
  three_letter:  3 letters + 3 digits + 2 digits    e.g. GTA 123-21

The trailing two digits are the registration year.  A validated plate is
always written LETTERS-DIGITS-YEAR, e.g. "GR-1234-20".

PlateString
───────────
validate() is the only place that produces a PlateString.  Everything
downstream (DetectionResult, lookups, the UI) deals in PlateString, so
raw OCR text can never masquerade as a confirmed plate.
"""

import re
from typing import List, Optional, Tuple

# ---------------------------------------------------------------------------
# Character-confusion map
#
# OCR engines commonly swap visually similar characters.  This map lets us
# try a single swap and recheck against the grammars.
# ---------------------------------------------------------------------------
CHAR_CONFUSIONS = {
    "O": "0", "0": "O",   # letter O  ↔  digit zero
    "I": "1", "1": "I",   # letter I  ↔  digit one
    "S": "5", "5": "S",   # letter S  ↔  digit five
    "Z": "2", "2": "Z",   # letter Z  ↔  digit two
    "B": "8", "8": "B",   # letter B  ↔  digit eight
    "G": "6", "6": "G",   # letter G  ↔  digit six
}

# Each pattern captures (letters, serial, year) from NORMALISED text.
PLATE_GRAMMARS = {
    "standard": re.compile(r"^([A-Z]{2})([0-9]{4})([0-9]{2})$"),
    "short": re.compile(r"^([A-Z]{2})([0-9]{3})([0-9]{2})$"),
    "three_letter": re.compile(r"^([A-Z]{3})([0-9]{3})([0-9]{2})$"),
}

_TOKEN = object()


class PlateString(str):
    """A canonical, grammar-validated plate such as ``"GR-1234-20"``.

    Behaves like a plain ``str``; ``grammar`` names the layout that
    matched.  Build one with :func:`validate`.
    """

    grammar: str

    def __new__(cls, value: str, grammar: str, _token=None):
        if _token is not _TOKEN:
            raise TypeError("PlateString is only created by grammar.validate()")
        obj = super().__new__(cls, value)
        obj.grammar = grammar
        return obj

    def __reduce__(self):
        return (_rebuild, (str(self), self.grammar))

    @property
    def compact(self) -> str:
        """The plate without separators, e.g. "GR123420"."""
        return self.replace("-", "")


def _rebuild(value: str, grammar: str) -> PlateString:
    return PlateString(value, grammar, _TOKEN)


# ═══════════════════════════════════════════════════════════════════════════
#  Public functions
# ═══════════════════════════════════════════════════════════════════════════

def normalize_text(raw_text: str) -> str:
    """Upper-case *raw_text* and strip everything except A-Z and 0-9.

    Examples:
        "gr 1234-20"  →  "GR123420"
        "G.R!1@2"     →  "GR12"
    """
    return re.sub(r"[^A-Z0-9]", "", (raw_text or "").upper())


def match_grammar(text: str, allow_swaps: bool = True) -> Optional[Tuple[str, str, Tuple[str, ...]]]:
    """Match normalised *text* against the plate grammars.

    Tries the exact text first, then (if *allow_swaps*) single-character
    confusion-swap variants, left to right.

    Returns:
        (grammar_name, matched_text, (letters, serial, year)) or None.
    """
    hit = _match_exact(text)
    if hit or not allow_swaps:
        return hit

    for variant in _single_swap_variants(text):
        hit = _match_exact(variant)
        if hit:
            return hit
    return None


def canonicalize(groups: Tuple[str, ...]) -> str:
    """Join (letters, serial, year) as LETTERS-SERIAL-YEAR."""
    return "-".join(groups)


def validate(text: str, allow_swaps: bool = True) -> Optional[PlateString]:
    """Turn raw OCR text into a PlateString, or None if it is not a plate.

    Examples:
        validate("GR1234 20")  →  "GR-1234-20"
        validate("XYZZY")      →  None
    """
    normalized = normalize_text(text)
    if not normalized:
        return None

    hit = match_grammar(normalized, allow_swaps=allow_swaps)
    if hit is None:
        return None

    name, _, groups = hit
    return PlateString(canonicalize(groups), name, _TOKEN)


def same_plate(a: str, b: str) -> bool:
    """True when *a* and *b* are the same plate ignoring case/separators."""
    return normalize_text(a) == normalize_text(b) and bool(normalize_text(a))


# ═══════════════════════════════════════════════════════════════════════════
#  Private helpers
# ═══════════════════════════════════════════════════════════════════════════

def _match_exact(text: str):
    for name, rx in PLATE_GRAMMARS.items():
        m = rx.match(text)
        if m:
            return name, text, m.groups()
    return None


def _single_swap_variants(text: str) -> List[str]:
    """Generate single-character confusion variants of *text*.

    One swap at a time, in position order, so the result is deterministic
    and false positives stay rare.

    Example:
        "GR12342O" → ["6R12342O", "GRI2342O", "GR1Z342O",
                      "GR1234ZO", "GR123420"]
    """
    variants = []
    for i, ch in enumerate(text):
        replacement = CHAR_CONFUSIONS.get(ch)
        if replacement:
            variants.append(text[:i] + replacement + text[i + 1:])
    return variants
