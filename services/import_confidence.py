"""
Import confidence scoring.

Pure functions, kept apart from persistence so the heuristic can be tuned
and tested on its own.
"""

from typing import Optional

from models.order_import import ComponentCandidate
from parsers.component_spec_parser import DEFAULT_CATEGORY

# Constants
BASE_CONFIDENCE = 0.5
CANDIDATE_BONUS = 0.3
PART_NUMBER_BONUS = 0.1
SPECIFIC_CATEGORY_BONUS = 0.1
REVIEW_THRESHOLD = 0.7


def calculate_import_confidence(candidate: Optional[ComponentCandidate]) -> float:
    """
    Score how far an imported item can be trusted without review.

    0.5 base, +0.3 when a candidate exists, +0.1 for a part number,
    +0.1 for a category more specific than the generic default.

    Returns:
        Confidence in [0, 1]
    """
    score = BASE_CONFIDENCE
    if candidate is not None:
        score += CANDIDATE_BONUS
        if candidate.part_number:
            score += PART_NUMBER_BONUS
        if candidate.category and candidate.category != DEFAULT_CATEGORY:
            score += SPECIFIC_CATEGORY_BONUS
    return round(min(max(score, 0.0), 1.0), 2)


def needs_manual_review(confidence: float, component_id: Optional[str]) -> bool:
    """Low confidence or an unlinked item goes to manual review."""
    return confidence < REVIEW_THRESHOLD or component_id is None
