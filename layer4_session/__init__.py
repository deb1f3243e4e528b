"""
Layer 4 — Scan Session
Orchestrates a front/back scan from quality check through validation.
"""
from .preprocess import EnhancementConfig, ImageBridge
from .orchestrator import (
    ScanOrchestrator,
    ScanSession,
    ScanState,
    SessionConfig,
    is_valid_contact_number,
    normalize_contact_number,
    quality_label,
)

__all__ = [
    'EnhancementConfig',
    'ImageBridge',
    'ScanOrchestrator',
    'ScanSession',
    'ScanState',
    'SessionConfig',
    'is_valid_contact_number',
    'normalize_contact_number',
    'quality_label',
]
