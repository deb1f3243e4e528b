"""
Tests for card service clients and extracted-field validation.
"""
from unittest.mock import Mock

import numpy as np
import pytest
import requests

from error_handlers import ExtractionServiceError, RecordServiceError
from layer2_crop import CardImage
from layer3_extraction import (
    CardExtractionClient,
    CardRecordClient,
    completeness,
    is_valid_id_number,
    validate_card_data,
)


def make_response(status_code=200, body=None, reason="OK"):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.reason = reason
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def card_images():
    pixels = np.zeros((10, 16, 3), dtype=np.uint8)
    front = CardImage(pixels=pixels, side='front', cropped=False, timestamp=1, encoded=b'front-bytes')
    back = CardImage(pixels=pixels, side='back', cropped=False, timestamp=1, encoded=b'back-bytes')
    return front, back


class TestValidation:
    """Test confidence scoring of structured records."""

    def test_complete_record_scores_100(self, card_fields):
        result = validate_card_data(card_fields)
        assert result.confidence == 100
        assert result.issues == []

    def test_malformed_id_number(self):
        result = validate_card_data({'civilIdNo': '12345', 'name': 'A', 'nationality': 'KWT'})
        assert result.confidence == 85
        assert result.issues == ['Invalid Civil ID format']

    def test_missing_fields_and_low_completeness(self):
        card_data = {
            'civilIdNo': '289010112345',
            'name': '',
            'nationality': '',
            'sex': 'M',
            'birthDate': '1989-01-01',
            'expiryDate': '',
            'bloodType': '',
            'address': '',
            'serialNo': '',
            'occupation': '',
        }
        result = validate_card_data(card_data)
        assert result.confidence == 50
        assert result.issues == [
            'Missing or empty name',
            'Missing or empty nationality',
            'Low data completeness',
        ]

    def test_empty_record(self):
        result = validate_card_data({})
        assert result.confidence == 30
        assert len(result.issues) == 4
        assert validate_card_data(None).confidence == 30

    def test_penalties_accumulate(self):
        result = validate_card_data({'civilIdNo': 'abc', 'x': '', 'y': '', 'z': ''})
        assert result.confidence == 100 - 20 - 20 - 15 - 10
        assert 0 <= result.confidence <= 100

    def test_validation_is_idempotent(self, card_fields):
        card_fields['civilIdNo'] = '1234'
        assert validate_card_data(card_fields) == validate_card_data(card_fields)

    def test_id_number_whitespace_ignored(self):
        assert is_valid_id_number('2890 1011 2345')
        assert not is_valid_id_number('28901011234')
        assert not is_valid_id_number('28901011234X')

    def test_completeness(self):
        assert completeness({}) == 0.0
        assert completeness({'a': 'x', 'b': ' ', 'c': None, 'd': 'y'}) == 50.0


class TestCardExtractionClient:
    """Test the dual-side extraction client."""

    def make_client(self, response=None, token=""):
        client = CardExtractionClient(base_url="http://cards.test/api/", token=token, timeout=5)
        client.session = Mock()
        if response is not None:
            client.session.post.return_value = response
        return client

    def test_scan_dual_success(self, card_images, card_fields):
        client = self.make_client(make_response(200, {'cardData': card_fields, 'id': 42}))

        result = client.scan_dual(*card_images, contact_number='51234567')

        assert result.fields == card_fields
        assert result.record_id == '42'
        args, kwargs = client.session.post.call_args
        assert args[0] == "http://cards.test/api/user/cards/scan-dual"
        assert kwargs['files']['frontImage'] == ('card-front-original-1.jpg', b'front-bytes', 'image/jpeg')
        assert kwargs['files']['backImage'][1] == b'back-bytes'
        assert kwargs['data'] == {'mobileNumber': '51234567'}
        assert kwargs['headers'] == {}
        assert kwargs['timeout'] == 5

    def test_bearer_token_sent(self, card_images, card_fields):
        client = self.make_client(make_response(200, {'cardData': card_fields, 'id': 1}), token="secret")
        client.scan_dual(*card_images, contact_number='51234567')
        assert client.session.post.call_args[1]['headers'] == {'Authorization': 'Bearer secret'}

    def test_error_message_surfaced(self, card_images):
        client = self.make_client(make_response(422, {'message': 'Card not readable'}, reason="Unprocessable"))

        with pytest.raises(ExtractionServiceError) as exc_info:
            client.scan_dual(*card_images, contact_number='51234567')

        assert exc_info.value.message == 'Card not readable'
        assert exc_info.value.status_code == 422

    def test_error_without_body(self, card_images):
        client = self.make_client(make_response(503, ValueError("no json"), reason="Service Unavailable"))

        with pytest.raises(ExtractionServiceError) as exc_info:
            client.scan_dual(*card_images)

        assert exc_info.value.message == "HTTP 503: Service Unavailable"

    def test_timeout_reported_as_failure(self, card_images):
        client = self.make_client()
        client.session.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(ExtractionServiceError):
            client.scan_dual(*card_images, contact_number='51234567')

    def test_malformed_body_reported_as_failure(self, card_images):
        for body in (ValueError("bad json"), {'id': 1}, ['not', 'a', 'dict']):
            client = self.make_client(make_response(200, body))
            with pytest.raises(ExtractionServiceError):
                client.scan_dual(*card_images, contact_number='51234567')


class TestCardRecordClient:
    """Test the record update client."""

    def make_client(self):
        client = CardRecordClient(base_url="http://cards.test/api", timeout=5)
        client.session = Mock()
        return client

    def test_update_card(self, card_fields):
        client = self.make_client()
        client.session.put.return_value = make_response(200, {'success': True})

        assert client.update_card('42', card_fields) == {'success': True}
        args, kwargs = client.session.put.call_args
        assert args[0] == "http://cards.test/api/user/cards/42"
        assert kwargs['json'] == card_fields

    def test_update_card_failure(self, card_fields):
        client = self.make_client()
        client.session.put.return_value = make_response(404, {'message': 'Card not found'})

        with pytest.raises(RecordServiceError) as exc_info:
            client.update_card('42', card_fields)
        assert exc_info.value.message == 'Card not found'

    def test_update_card_connection_error(self, card_fields):
        client = self.make_client()
        client.session.put.side_effect = requests.ConnectionError("refused")

        with pytest.raises(RecordServiceError):
            client.update_card('42', card_fields)
