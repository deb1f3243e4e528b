"""
Tests for the card scanner Flask application.
"""
import base64
import io
import json
from collections import OrderedDict
from unittest.mock import Mock

import cv2
import numpy as np
import pytest

from error_handlers import ExtractionServiceError, RecordServiceError
from layer3_extraction import ExtractionResult
from layer4_session import SessionConfig


@pytest.fixture
def scanner(app, monkeypatch):
    """Coordinator with remote services replaced by mocks."""
    from app import scanner as coordinator
    monkeypatch.setattr(coordinator.orchestrator, 'extraction_client', Mock(base_url="http://cards.test/api"))
    monkeypatch.setattr(coordinator.orchestrator, '_record_client', Mock())
    monkeypatch.setattr(coordinator.orchestrator, 'config', SessionConfig(progress_reset_delay_s=None))
    monkeypatch.setattr(coordinator, 'completed_sessions', OrderedDict())
    coordinator.detector_session.reset()
    coordinator.request_session.reset()
    return coordinator


def scan_form(card_jpeg, mobile_number='51234567', back=True):
    data = {
        'frontImage': (io.BytesIO(card_jpeg), 'front.jpg'),
        'mobileNumber': mobile_number,
    }
    if back:
        data['backImage'] = (io.BytesIO(card_jpeg), 'back.jpg')
    return data


class TestHealthEndpoint:
    """Test health and status endpoints."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_status_reports_configuration(self, client, scanner):
        """Test /api/status reports auto-capture and service URL."""
        response = client.get('/api/status')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['auto_capture_enabled'] is False
        assert data['card_service_url'] == "http://cards.test/api"


class TestDetectEndpoint:
    """Test single-frame detection endpoint."""

    def test_detect_requires_image(self, client, scanner):
        response = client.post('/api/detect', json={})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_detect_multipart(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/detect',
            data={'image': (io.BytesIO(card_jpeg), 'frame.jpg')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['sample']['found'] is True
        assert data['state']['is_stable'] is False

    def test_detect_base64_becomes_stable(self, client, scanner, card_jpeg):
        encoded = "data:image/jpeg;base64," + base64.b64encode(card_jpeg).decode('ascii')
        for _ in range(2):
            response = client.post('/api/detect', json={'image': encoded})
        data = json.loads(response.data)
        assert data['state']['is_stable'] is True
        assert data['state']['boundary'] is not None

    def test_detect_rejects_garbage(self, client, scanner):
        response = client.post(
            '/api/detect',
            data={'image': (io.BytesIO(b'not an image'), 'frame.jpg')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_detect_rejects_non_string_image(self, client, scanner):
        response = client.post('/api/detect', json={'image': 5})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_detect_leaves_camera_stream_alone(self, client, scanner, card_jpeg):
        encoded = base64.b64encode(card_jpeg).decode('ascii')
        for _ in range(2):
            client.post('/api/detect', json={'image': encoded})

        assert scanner.request_session.state.is_stable
        assert not scanner.detector_session.state.is_stable
        assert scanner.detector_session.trusted_boundary() is None

    def test_reset_clears_state(self, client, scanner, card_jpeg):
        encoded = base64.b64encode(card_jpeg).decode('ascii')
        client.post('/api/detect', json={'image': encoded})
        client.post('/api/detect', json={'image': encoded})

        response = client.post('/api/detect/reset')
        data = json.loads(response.data)
        assert data['state']['is_stable'] is False
        assert data['state']['stable_streak'] == 0


class TestCaptureEndpoint:
    """Test still capture and crop endpoint."""

    def test_capture_with_boundary(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/capture',
            data={
                'image': (io.BytesIO(card_jpeg), 'front.jpg'),
                'side': 'front',
                'boundary': json.dumps({'x': 160, 'y': 140, 'width': 320, 'height': 200}),
            },
            content_type='multipart/form-data'
        )
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['strategy'] == 'boundary'
        assert data['cropped']['width'] == 352
        assert data['original']['filename'].startswith('card-front-original-')
        assert data['display_image'].startswith('data:image/jpeg;base64,')

    def test_capture_without_boundary_uses_fallback(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/capture',
            data={'image': (io.BytesIO(card_jpeg), 'back.jpg'), 'side': 'back'},
            content_type='multipart/form-data'
        )
        data = json.loads(response.data)
        assert data['strategy'] == 'fallback_detection'
        assert data['cropped']['side'] == 'back'

    def test_upload_after_detect_crops_its_own_card(self, client, scanner, card_jpeg):
        """An uploaded still is located on its own, not with an earlier frame's boundary."""
        encoded = base64.b64encode(card_jpeg).decode('ascii')
        for _ in range(3):
            client.post('/api/detect', json={'image': encoded})

        frame = np.full((480, 640, 3), 40, dtype=np.uint8)
        frame[260:460, 10:330] = 200
        ok, buffer = cv2.imencode('.jpg', frame)
        assert ok

        response = client.post(
            '/api/capture',
            data={'image': (io.BytesIO(buffer.tobytes()), 'front.jpg'), 'side': 'front'},
            content_type='multipart/form-data'
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['strategy'] == 'fallback_detection'
        assert data['boundary']['x'] <= 20
        assert abs(data['boundary']['y'] - 250) <= 20

    def test_capture_invalid_side(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/capture',
            data={'image': (io.BytesIO(card_jpeg), 'x.jpg'), 'side': 'left'},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400

    def test_capture_invalid_boundary(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/capture',
            data={'image': (io.BytesIO(card_jpeg), 'x.jpg'), 'side': 'front', 'boundary': '{"x": 1}'},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_BOUNDARY'


class TestScanEndpoint:
    """Test the dual-side scan endpoint."""

    def test_scan_success(self, client, scanner, card_jpeg, card_fields):
        scanner.orchestrator.extraction_client.scan_dual.return_value = ExtractionResult(
            fields=card_fields, record_id='42'
        )

        response = client.post('/api/scan', data=scan_form(card_jpeg), content_type='multipart/form-data')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['state'] == 'complete'
        assert data['progress_percent'] == 100
        assert data['extraction_confidence'] == 100
        assert data['structured_record'] == card_fields
        assert '42' in scanner.completed_sessions

    def test_completed_sessions_are_bounded(self, client, scanner, card_jpeg, card_fields, monkeypatch):
        monkeypatch.setattr(scanner, 'completed_session_limit', 2)
        scanner.orchestrator.extraction_client.scan_dual.side_effect = [
            ExtractionResult(fields=dict(card_fields), record_id=record_id)
            for record_id in ('1', '2', '3')
        ]

        for _ in range(3):
            response = client.post('/api/scan', data=scan_form(card_jpeg), content_type='multipart/form-data')
            assert response.status_code == 200

        assert list(scanner.completed_sessions) == ['2', '3']

    def test_scan_invalid_mobile_number(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/scan', data=scan_form(card_jpeg, mobile_number='01234567'),
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CONTACT_NUMBER'

    def test_scan_missing_back_not_ready(self, client, scanner, card_jpeg):
        response = client.post(
            '/api/scan', data=scan_form(card_jpeg, back=False),
            content_type='multipart/form-data'
        )
        assert response.status_code == 422
        data = json.loads(response.data)
        assert data['state'] == 'idle'
        scanner.orchestrator.extraction_client.scan_dual.assert_not_called()

    def test_scan_service_failure(self, client, scanner, card_jpeg):
        scanner.orchestrator.extraction_client.scan_dual.side_effect = ExtractionServiceError(
            "Card not readable", status_code=422
        )

        response = client.post('/api/scan', data=scan_form(card_jpeg), content_type='multipart/form-data')

        assert response.status_code == 502
        data = json.loads(response.data)
        assert data['state'] == 'error'
        assert data['error_message'] == "Failed to scan card: Card not readable"


class TestCardUpdateEndpoint:
    """Test record edits."""

    def test_update_forwards_edits(self, client, scanner, card_fields):
        scanner.orchestrator.record_client.update_card.return_value = {'success': True}

        response = client.put('/api/cards/42', json=card_fields)

        assert response.status_code == 200
        scanner.orchestrator.record_client.update_card.assert_called_once_with('42', card_fields)

    def test_update_requires_object(self, client, scanner):
        response = client.put('/api/cards/42', json=['not', 'an', 'object'])
        assert response.status_code == 400

    def test_update_failure(self, client, scanner, card_fields):
        scanner.orchestrator.record_client.update_card.side_effect = RecordServiceError(
            "Card not found", status_code=404
        )

        response = client.put('/api/cards/42', json=card_fields)

        assert response.status_code == 502
        assert json.loads(response.data)['error_code'] == 'RECORD_UPDATE_FAILED'
