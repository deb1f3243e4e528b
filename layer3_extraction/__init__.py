"""
Layer 3 — Extraction
Remote field extraction, record updates and extracted-field validation.
"""
from .client import (
    CardExtractionClient,
    CardRecordClient,
    ExtractionResult,
    get_extraction_client,
    get_record_client,
)
from .validator import ValidationResult, completeness, is_valid_id_number, validate_card_data

__all__ = [
    'CardExtractionClient',
    'CardRecordClient',
    'ExtractionResult',
    'get_extraction_client',
    'get_record_client',
    'ValidationResult',
    'completeness',
    'is_valid_id_number',
    'validate_card_data',
]
