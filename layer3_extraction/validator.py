"""
Layer 3 — Field Validation
Derives an extraction confidence (0-100) and an ordered issue list from a
structured card field map. Shortfalls never raise; a low-confidence record
can still be accepted after manual review.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: Tuple[str, ...] = ('civilIdNo', 'name', 'nationality')
ID_NUMBER_FIELD = 'civilIdNo'
ID_NUMBER_PATTERN = re.compile(r'\d{12}')

MISSING_FIELD_PENALTY = 20
INVALID_ID_PENALTY = 15
LOW_COMPLETENESS_PENALTY = 10
MIN_COMPLETENESS = 70.0


@dataclass
class ValidationResult:
    confidence: int = 100
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'confidence': self.confidence, 'issues': list(self.issues)}


def _is_blank(value) -> bool:
    return value is None or str(value).strip() == ''


def completeness(card_data: Dict) -> float:
    """
    Percentage of fields holding a non-empty string.
    An empty map counts as 0% complete.
    """
    total_fields = len(card_data)
    if total_fields == 0:
        return 0.0
    filled_fields = sum(
        1 for value in card_data.values()
        if isinstance(value, str) and value.strip() != ''
    )
    return (filled_fields / total_fields) * 100


def is_valid_id_number(value) -> bool:
    """Fixed-length all-digit check after removing whitespace."""
    return bool(ID_NUMBER_PATTERN.fullmatch(re.sub(r'\s', '', str(value))))


def validate_card_data(card_data: Dict) -> ValidationResult:
    """
    Score a structured field map.

    Starting from 100: -20 per missing/blank required field, -15 for an
    ID number that is present but malformed, -10 if fewer than 70% of the
    fields are filled. Floored at 0.

    Args:
        card_data: Field map from the extraction service

    Returns:
        ValidationResult: confidence and ordered issues
    """
    card_data = card_data or {}
    issues = []
    confidence = 100

    for field_name in REQUIRED_FIELDS:
        if _is_blank(card_data.get(field_name)):
            issues.append(f"Missing or empty {field_name}")
            confidence -= MISSING_FIELD_PENALTY

    id_number = card_data.get(ID_NUMBER_FIELD)
    if not _is_blank(id_number) and not is_valid_id_number(id_number):
        issues.append('Invalid Civil ID format')
        confidence -= INVALID_ID_PENALTY

    if completeness(card_data) < MIN_COMPLETENESS:
        issues.append('Low data completeness')
        confidence -= LOW_COMPLETENESS_PENALTY

    result = ValidationResult(confidence=max(0, confidence), issues=issues)
    logger.debug(f"Validation: confidence={result.confidence} issues={result.issues}")
    return result
