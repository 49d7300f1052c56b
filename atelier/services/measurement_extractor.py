"""
Measurement extraction from free-text order comments

Older intake forms appended the measurements to the comments field instead
of the structured column, in a few slightly different layouts. Each layout is
a named pattern; patterns are tried in order, strictest first.
"""

import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from atelier.schemas.order import Measurements

logger = logging.getLogger(__name__)

_VALUE = r"([^,\n\r]+?)"
_LAST_VALUE = r"([^\n\r]+?)\s*$"
_SEP_STRICT = r",\s*"
_SEP_LOOSE = r"[,\s]+"
_FLAGS = re.IGNORECASE | re.MULTILINE

_LABEL = re.compile(r"Measurements:", re.IGNORECASE)


@dataclass(frozen=True)
class MeasurementPattern:
    """One recognised annotation layout"""
    name: str
    variant: str
    fields: Tuple[str, ...]
    regex: "re.Pattern"

    def search(self, text: str) -> Optional["re.Match"]:
        return self.regex.search(text)


@dataclass(frozen=True)
class ExtractionResult:
    """Parsed measurements plus the text with the annotation removed"""
    measurements: Measurements
    residual: str
    pattern: str


def _build(name: str, variant: str, fields: Sequence[str], labels: Sequence[str], prefix: str, sep: str) -> MeasurementPattern:
    parts = [f"{label}={_VALUE}" for label in labels[:-1]]
    body = sep.join(parts) + sep + f"{labels[-1]}={_LAST_VALUE}"
    return MeasurementPattern(name, variant, tuple(fields), re.compile(prefix + body, _FLAGS))


_IN_HOUSE_FIELDS = ("height", "bust", "high_waist", "hips")
_IN_HOUSE_STRICT_LABELS = ("Height", "Bust", r"High\s+Waist", "Hips")
_IN_HOUSE_LOOSE_LABELS = ("Height", "Bust", r"High\s*Waist", "Hips")
_STANDARD_FIELDS = ("size", "bust", "waist", "hips")
_STANDARD_LABELS = ("Size", "Bust", "Waist", "Hips")

IN_HOUSE_PATTERNS: List[MeasurementPattern] = [
    _build("in_house_strict", "in_house", _IN_HOUSE_FIELDS, _IN_HOUSE_STRICT_LABELS, r"Measurements:\s*", _SEP_STRICT),
    _build("in_house_labelled", "in_house", _IN_HOUSE_FIELDS, _IN_HOUSE_LOOSE_LABELS, r"Measurements:.*?", _SEP_LOOSE),
    _build("in_house_bare", "in_house", _IN_HOUSE_FIELDS, _IN_HOUSE_LOOSE_LABELS, r"", _SEP_LOOSE),
]

STANDARD_PATTERNS: List[MeasurementPattern] = [
    _build("standard_strict", "standard", _STANDARD_FIELDS, _STANDARD_LABELS, r"Measurements:\s*", _SEP_STRICT),
    _build("standard_labelled", "standard", _STANDARD_FIELDS, _STANDARD_LABELS, r"Measurements:.*?", _SEP_LOOSE),
    _build("standard_bare", "standard", _STANDARD_FIELDS, _STANDARD_LABELS, r"", _SEP_LOOSE),
]

DEFAULT_PATTERNS: List[MeasurementPattern] = IN_HOUSE_PATTERNS + STANDARD_PATTERNS


def strip_annotation(text: str, match: "re.Match") -> str:
    """Remove a matched annotation, starting from its label when it has one"""
    start = match.start()
    line_start = text.rfind("\n", 0, start) + 1
    label = _LABEL.search(text, line_start, start)
    if label is not None:
        start = label.start()
    before = text[:start].rstrip()
    after = text[match.end():].lstrip()
    if before and after:
        return f"{before}\n{after}"
    return before or after


class MeasurementExtractor:
    """Parses measurement annotations out of comment text"""

    def __init__(self, patterns: Optional[Sequence[MeasurementPattern]] = None):
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_PATTERNS)

    def extract(self, text: Optional[str]) -> Optional[ExtractionResult]:
        """Return the first pattern that matches, or None"""
        if not text or not isinstance(text, str):
            return None
        for pattern in self.patterns:
            match = pattern.search(text)
            if match is None:
                continue
            values = {field: value.strip() for field, value in zip(pattern.fields, match.groups())}
            logger.debug(f"Measurements matched pattern {pattern.name}")
            return ExtractionResult(
                measurements=Measurements(variant=pattern.variant, **values),
                residual=strip_annotation(text, match),
                pattern=pattern.name,
            )
        return None


default_extractor = MeasurementExtractor()
