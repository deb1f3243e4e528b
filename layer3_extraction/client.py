"""
Card Service API Clients
Communicates with the remote card service for field extraction and record
updates.

The extraction service receives the two *original* (uncropped) card images
plus the customer's contact number and returns a structured field map and
a record identifier.
"""

import logging
import os
import requests
from dataclasses import dataclass, field
from typing import Dict, Optional

from error_handlers import ExtractionServiceError, RecordServiceError

logger = logging.getLogger(__name__)

# Default card service URL - can be overridden via environment variable
CARD_SERVICE_URL = os.environ.get('CARD_SERVICE_URL', 'http://card-service:8000/api')
CARD_SERVICE_TOKEN = os.environ.get('CARD_SERVICE_TOKEN')
CARD_SERVICE_TIMEOUT = int(os.environ.get('CARD_SERVICE_TIMEOUT', 60))


@dataclass
class ExtractionResult:
    """Structured field map returned by the extraction service."""
    fields: Dict = field(default_factory=dict)
    record_id: Optional[str] = None


def _error_message(response) -> str:
    """Best-effort error message from a failed response."""
    fallback = f"HTTP {response.status_code}: {response.reason}"
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return body.get('message') or body.get('error') or fallback
    return fallback


class _CardServiceBase:
    """Shared session and auth handling for card service clients."""

    def __init__(self, base_url: str = None, token: str = None, timeout: int = None):
        """
        Args:
            base_url: Base URL of the card service. Defaults to CARD_SERVICE_URL env var.
            token: Optional bearer token. Defaults to CARD_SERVICE_TOKEN env var.
            timeout: Request timeout in seconds.
        """
        self.base_url = (base_url or CARD_SERVICE_URL).rstrip('/')
        self.token = token if token is not None else CARD_SERVICE_TOKEN
        self.timeout = timeout or CARD_SERVICE_TIMEOUT
        self.session = requests.Session()

    def _headers(self) -> dict:
        return {'Authorization': f"Bearer {self.token}"} if self.token else {}


class CardExtractionClient(_CardServiceBase):
    """
    Client for the remote field-extraction service.

    No response (timeout, connection failure) is reported exactly like an
    explicit failure response.
    """

    def __init__(self, base_url: str = None, token: str = None, timeout: int = None):
        super().__init__(base_url, token, timeout)
        logger.info(f"Card extraction client initialized with base URL: {self.base_url}")

    def scan_dual(self, front_image, back_image, contact_number: str = None) -> ExtractionResult:
        """
        Submit both original card images for field extraction.

        Args:
            front_image: CardImage for the front side (uncropped original)
            back_image: CardImage for the back side (uncropped original)
            contact_number: Customer mobile number

        Returns:
            ExtractionResult: Field map and record id

        Raises:
            ExtractionServiceError: If the request fails or the body is malformed
        """
        files = {
            'frontImage': (front_image.filename, front_image.to_bytes(), 'image/jpeg'),
            'backImage': (back_image.filename, back_image.to_bytes(), 'image/jpeg'),
        }
        data = {'mobileNumber': contact_number} if contact_number else {}

        try:
            response = self.session.post(
                f"{self.base_url}/user/cards/scan-dual",
                files=files,
                data=data,
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Dual card scan request failed: {e}")
            raise ExtractionServiceError(f"Dual card scan request failed: {e}")

        if not response.ok:
            message = _error_message(response)
            logger.error(f"Dual card scan error: {response.status_code} {message}")
            raise ExtractionServiceError(message, status_code=response.status_code)

        try:
            result = response.json()
        except ValueError:
            raise ExtractionServiceError(
                "Extraction service returned invalid JSON",
                status_code=response.status_code
            )

        card_data = result.get('cardData') if isinstance(result, dict) else None
        if not isinstance(card_data, dict):
            raise ExtractionServiceError(
                "Extraction service response has no card data",
                status_code=response.status_code
            )

        record_id = result.get('id')
        logger.info(f"Extraction returned {len(card_data)} fields (record {record_id})")
        return ExtractionResult(
            fields=card_data,
            record_id=str(record_id) if record_id is not None else None
        )


class CardRecordClient(_CardServiceBase):
    """Client for the card record update service (idempotent overwrite)."""

    def __init__(self, base_url: str = None, token: str = None, timeout: int = None):
        super().__init__(base_url, token, timeout)
        logger.info(f"Card record client initialized with base URL: {self.base_url}")

    def update_card(self, card_id: str, card_data: dict) -> dict:
        """
        Overwrite a stored card record with an edited field map.

        Args:
            card_id: Record identifier returned by extraction
            card_data: Full field map

        Returns:
            dict: Service response body (empty if none)

        Raises:
            RecordServiceError: If the update fails
        """
        try:
            response = self.session.put(
                f"{self.base_url}/user/cards/{card_id}",
                json=card_data,
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Failed to update card {card_id}: {e}")
            raise RecordServiceError(f"Failed to update card: {e}")

        if not response.ok:
            message = _error_message(response)
            logger.error(f"Card update error: {response.status_code} {message}")
            raise RecordServiceError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            return {}


# Singleton instances
_extraction_client: Optional[CardExtractionClient] = None
_record_client: Optional[CardRecordClient] = None


def get_extraction_client() -> CardExtractionClient:
    """
    Get the singleton extraction client instance.

    Returns:
        CardExtractionClient: The client instance.
    """
    global _extraction_client
    if _extraction_client is None:
        _extraction_client = CardExtractionClient()
    return _extraction_client


def get_record_client() -> CardRecordClient:
    """
    Get the singleton record client instance.

    Returns:
        CardRecordClient: The client instance.
    """
    global _record_client
    if _record_client is None:
        _record_client = CardRecordClient()
    return _record_client
