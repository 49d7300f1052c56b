"""
Unit tests for measurement extraction from order comments
"""

import pytest

from atelier.services.measurement_extractor import (
    DEFAULT_PATTERNS,
    IN_HOUSE_PATTERNS,
    STANDARD_PATTERNS,
    MeasurementExtractor,
    default_extractor,
)


class TestStandardPatterns:
    """Size/Bust/Waist/Hips annotations"""

    def test_strict_annotation(self):
        """The canonical intake form layout parses and is stripped"""
        result = default_extractor.extract("Measurements: Size=M, Bust=34, Waist=28, Hips=38")

        assert result is not None
        assert result.pattern == "standard_strict"
        assert result.measurements.variant == "standard"
        assert result.measurements.as_fields() == {
            "size": "M", "bust": "34", "waist": "28", "hips": "38", "length": ""
        }
        assert "Measurements:" not in result.residual
        assert result.residual == ""

    def test_annotation_after_other_comments(self):
        """Text before the annotation is kept"""
        text = "Please deliver before Friday\nMeasurements: Size=L, Bust=40, Waist=32, Hips=42"

        result = default_extractor.extract(text)

        assert result.measurements.size == "L"
        assert result.measurements.hips == "42"
        assert result.residual == "Please deliver before Friday"

    def test_labelled_with_loose_separators(self):
        """A label followed by extra words and space separators still matches"""
        result = default_extractor.extract("Measurements: (inches) Size=S Bust=30 Waist=24 Hips=34")

        assert result is not None
        assert result.pattern == "standard_labelled"
        assert result.measurements.waist == "24"
        assert "Measurements" not in result.residual

    def test_bare_annotation_without_label(self):
        """No label at all falls through to the bare pattern"""
        result = default_extractor.extract("size=XL, bust=44, waist=36, hips=46")

        assert result.pattern == "standard_bare"
        assert result.measurements.size == "XL"

    def test_case_insensitive(self):
        """Labels match regardless of case"""
        result = default_extractor.extract("MEASUREMENTS: SIZE=M, BUST=34, WAIST=28, HIPS=38")

        assert result is not None
        assert result.measurements.bust == "34"


class TestInHousePatterns:
    """Height/Bust/High Waist/Hips annotations"""

    def test_strict_in_house(self):
        """In-house measurements win over the standard patterns"""
        result = default_extractor.extract("Measurements: Height=165, Bust=36, High Waist=30, Hips=40")

        assert result.pattern == "in_house_strict"
        assert result.measurements.variant == "in_house"
        assert result.measurements.as_fields() == {
            "height": "165", "bust": "36", "high_waist": "30", "hips": "40"
        }
        assert result.residual == ""

    def test_high_waist_without_space(self):
        """HighWaist spelled as one word is accepted"""
        result = default_extractor.extract("Measurements: Height=170 Bust=38 HighWaist=31 Hips=41")

        assert result is not None
        assert result.measurements.high_waist == "31"

    def test_text_after_annotation_is_kept(self):
        """Following lines survive the stripping"""
        text = "Measurements: Height=160, Bust=34, High Waist=28, Hips=38\nGift wrap please"

        result = default_extractor.extract(text)

        assert result.residual == "Gift wrap please"


class TestNoMatch:
    """Inputs without a usable annotation"""

    @pytest.mark.parametrize("text", [None, "", "Deliver to the back gate", "Size=M, Bust=34"])
    def test_returns_none(self, text):
        """Nothing recognisable yields None"""
        assert default_extractor.extract(text) is None

    def test_input_is_not_mutated(self):
        """The caller's string is left as it was"""
        text = "Note\nMeasurements: Size=M, Bust=34, Waist=28, Hips=38"
        original = str(text)

        default_extractor.extract(text)

        assert text == original


class TestPatternOrdering:
    """Pattern list configuration"""

    def test_default_order_is_in_house_first(self):
        """In-house patterns are tried before the standard ones"""
        assert DEFAULT_PATTERNS == IN_HOUSE_PATTERNS + STANDARD_PATTERNS
        assert [p.name for p in DEFAULT_PATTERNS][0] == "in_house_strict"

    def test_custom_pattern_list(self):
        """An extractor limited to standard patterns ignores in-house text"""
        extractor = MeasurementExtractor(patterns=STANDARD_PATTERNS)

        assert extractor.extract("Measurements: Height=160, Bust=34, High Waist=28, Hips=38") is None

    def test_each_pattern_is_independently_usable(self):
        """Every named pattern can be searched on its own"""
        for pattern in DEFAULT_PATTERNS:
            assert pattern.search("nothing to see here") is None
