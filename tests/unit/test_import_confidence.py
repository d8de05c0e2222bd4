"""
Unit tests for import confidence scoring.

Run: pytest tests/unit/test_import_confidence.py -v
"""

import pytest

from models.order_import import ComponentCandidate
from parsers.component_spec_parser import DEFAULT_CATEGORY, extract_component
from services.import_confidence import (
    REVIEW_THRESHOLD,
    calculate_import_confidence,
    needs_manual_review,
)


class TestCalculateImportConfidence:
    """Tests for calculate_import_confidence()"""

    def test_no_candidate(self):
        """Should return the base score without a candidate."""
        assert calculate_import_confidence(None) == 0.5

    def test_minimal_candidate(self):
        """Should add the candidate bonus even for a minimal candidate."""
        candidate = extract_component("Gift box for my friend")

        assert calculate_import_confidence(candidate) == 0.8

    def test_fully_recognized_candidate(self):
        """Should reach 1.0 with a part number and a specific category."""
        candidate = extract_component("NE555 Timer IC DIP-8")

        assert calculate_import_confidence(candidate) == 1.0

    def test_resistor_without_part_number(self):
        """Should score a classified resistor at 0.9."""
        candidate = extract_component("10K Ohm Resistor 1/4W")

        assert calculate_import_confidence(candidate) == 0.9

    @pytest.mark.parametrize("category", [DEFAULT_CATEGORY, "Passive Components"])
    def test_part_number_never_decreases_score(self, category):
        """Should never lower confidence when a part number is added."""
        # Arrange
        without = ComponentCandidate(name="Widget", category=category)
        with_part = without.model_copy(update={"part_number": "XY1234"})

        # Act / Assert
        assert calculate_import_confidence(with_part) >= calculate_import_confidence(without)

    def test_score_is_bounded(self):
        """Should stay within [0, 1]."""
        candidate = ComponentCandidate(name="X", category="Sensors", part_number="BME280")

        assert 0.0 <= calculate_import_confidence(candidate) <= 1.0


class TestNeedsManualReview:
    """Tests for needs_manual_review()"""

    def test_low_confidence(self):
        """Should flag scores under the threshold."""
        assert needs_manual_review(REVIEW_THRESHOLD - 0.01, "component-1") is True

    def test_unlinked_item(self):
        """Should flag items without a component."""
        assert needs_manual_review(1.0, None) is True

    def test_confident_linked_item(self):
        """Should not flag a confident, linked item."""
        assert needs_manual_review(REVIEW_THRESHOLD, "component-1") is False
