"""
Tests for scan session orchestration and preprocessing.
"""
import time
from unittest.mock import Mock

import numpy as np
import pytest

from error_handlers import (
    ExtractionServiceError,
    ImageDecodeError,
    InvalidContactNumberError,
    SessionStateError,
)
from layer2_crop import CardImage
from layer3_extraction import ExtractionResult
from layer4_session import (
    EnhancementConfig,
    ImageBridge,
    ScanOrchestrator,
    ScanSession,
    ScanState,
    SessionConfig,
    is_valid_contact_number,
    quality_label,
)


@pytest.fixture
def extraction_client(card_fields):
    client = Mock()
    client.scan_dual.return_value = ExtractionResult(fields=dict(card_fields), record_id='42')
    return client


@pytest.fixture
def record_client():
    client = Mock()
    client.update_card.return_value = {'success': True}
    return client


@pytest.fixture
def orchestrator(extraction_client, record_client):
    return ScanOrchestrator(
        extraction_client=extraction_client,
        record_client=record_client,
        config=SessionConfig(progress_reset_delay_s=None)
    )


@pytest.fixture
def ready_session(orchestrator, card_jpeg):
    session = orchestrator.create_session()
    orchestrator.set_contact_number(session, '5123 4567')
    orchestrator.attach_upload(session, 'front', card_jpeg)
    orchestrator.attach_upload(session, 'back', card_jpeg)
    return session


class TestQualityLabel:
    """Test the pairwise quality label."""

    @pytest.mark.parametrize("front,back,label", [
        (85, 90, 'excellent'),
        (81, 81, 'excellent'),
        (80, 95, 'good'),
        (61, 61, 'good'),
        (45, 50, 'fair'),
        (85, 50, 'fair'),
        (40, 90, 'poor'),
        (0, 0, 'poor'),
    ])
    def test_labels(self, front, back, label):
        assert quality_label(front, back) == label


class TestContactNumber:
    """Test the contact-number format check."""

    @pytest.mark.parametrize("value", ['51234567', '5123 4567', ' 9999 0000 '])
    def test_valid(self, value):
        assert is_valid_contact_number(value)

    @pytest.mark.parametrize("value", ['', None, '01234567', '+96551234567', '5123456', '512345678', '5123456a'])
    def test_invalid(self, value):
        assert not is_valid_contact_number(value)

    def test_set_contact_number_strips_whitespace(self, orchestrator):
        session = orchestrator.create_session()
        assert orchestrator.set_contact_number(session, '5123 4567') == '51234567'
        assert session.contact_number == '51234567'

    def test_set_contact_number_rejects_invalid(self, orchestrator):
        session = orchestrator.create_session()
        with pytest.raises(InvalidContactNumberError):
            orchestrator.set_contact_number(session, '01234567')
        assert session.contact_number is None


class TestScanOrchestrator:
    """Test the scan session state machine."""

    def test_new_session_is_idle(self, orchestrator):
        session = orchestrator.create_session()
        assert session.state is ScanState.IDLE
        assert session.progress_percent == 0
        assert not session.is_ready()

    def test_missing_back_image_stays_idle(self, orchestrator, extraction_client, card_jpeg):
        session = orchestrator.create_session()
        orchestrator.set_contact_number(session, '51234567')
        orchestrator.attach_upload(session, 'front', card_jpeg)

        orchestrator.run(session)

        assert session.state is ScanState.IDLE
        assert session.progress_percent == 0
        extraction_client.scan_dual.assert_not_called()

    def test_missing_contact_number_stays_idle(self, orchestrator, extraction_client, card_jpeg):
        session = orchestrator.create_session()
        orchestrator.attach_upload(session, 'front', card_jpeg)
        orchestrator.attach_upload(session, 'back', card_jpeg)

        orchestrator.run(session)

        assert session.state is ScanState.IDLE
        extraction_client.scan_dual.assert_not_called()

    def test_unchecked_contact_number_stays_idle(self, orchestrator, extraction_client, card_jpeg):
        """A number that never passed the format check cannot start a scan."""
        session = ScanSession(contact_number='0abc')
        orchestrator.attach_upload(session, 'front', card_jpeg)
        orchestrator.attach_upload(session, 'back', card_jpeg)

        assert not session.is_ready()
        orchestrator.run(session)

        assert session.state is ScanState.IDLE
        extraction_client.scan_dual.assert_not_called()

    def test_full_run(self, orchestrator, ready_session, extraction_client, card_fields):
        states = []
        orchestrator.subscribe(lambda s: states.append((s.state, s.progress_percent)))

        orchestrator.run(ready_session)

        assert ready_session.state is ScanState.COMPLETE
        assert ready_session.progress_percent == 100
        assert ready_session.step_label == 'Scan completed successfully!'
        assert ready_session.extraction_confidence == 100
        assert ready_session.record == card_fields
        assert ready_session.record_id == '42'
        assert ready_session.image_quality_label in ('poor', 'fair', 'good', 'excellent')
        assert states == [
            (ScanState.QUALITY_CHECK, 10),
            (ScanState.PREPROCESSING, 25),
            (ScanState.EXTRACTING, 50),
            (ScanState.EXTRACTING, 75),
            (ScanState.VALIDATING, 75),
            (ScanState.COMPLETE, 100),
        ]

    def test_originals_submitted_not_crops(self, orchestrator, ready_session, extraction_client, card_jpeg):
        orchestrator.run(ready_session)

        front, back, contact_number = extraction_client.scan_dual.call_args[0]
        assert not front.cropped and not back.cropped
        assert front.to_bytes() is card_jpeg
        assert contact_number == '51234567'
        assert ready_session.front_display.cropped

    def test_low_confidence_still_completes(self, orchestrator, ready_session, extraction_client):
        extraction_client.scan_dual.return_value = ExtractionResult(
            fields={'civilIdNo': '12345', 'name': '', 'nationality': 'KWT'}, record_id='7'
        )

        orchestrator.run(ready_session)

        assert ready_session.state is ScanState.COMPLETE
        assert ready_session.extraction_confidence == 100 - 20 - 15 - 10
        assert 'Invalid Civil ID format' in ready_session.to_dict()['issues']

    def test_service_failure_enters_error(self, orchestrator, ready_session, extraction_client):
        extraction_client.scan_dual.side_effect = ExtractionServiceError("Card not readable", status_code=422)

        orchestrator.run(ready_session)

        assert ready_session.state is ScanState.ERROR
        assert ready_session.progress_percent == 0
        assert ready_session.step_label == ''
        assert ready_session.error_message == "Failed to scan card: Card not readable"
        assert ready_session.record is None

    def test_unexpected_failure_enters_error(self, orchestrator, ready_session):
        orchestrator.preprocessor = Mock()
        orchestrator.preprocessor.process.side_effect = RuntimeError("out of memory")

        orchestrator.run(ready_session)

        assert ready_session.state is ScanState.ERROR
        assert ready_session.error_message == "Failed to scan card: out of memory"

    def test_error_is_terminal(self, orchestrator, ready_session, extraction_client):
        extraction_client.scan_dual.side_effect = ExtractionServiceError("down")
        orchestrator.run(ready_session)

        with pytest.raises(SessionStateError):
            orchestrator.run(ready_session)
        with pytest.raises(SessionStateError):
            orchestrator.set_contact_number(ready_session, '51234567')

    def test_sessions_are_independent(self, orchestrator, ready_session):
        other = orchestrator.create_session()
        orchestrator.run(ready_session)
        assert other.state is ScanState.IDLE
        assert other.session_id != ready_session.session_id

    def test_progress_resets_after_completion(self, extraction_client, record_client, card_jpeg):
        orchestrator = ScanOrchestrator(
            extraction_client=extraction_client,
            record_client=record_client,
            config=SessionConfig(progress_reset_delay_s=0.01)
        )
        session = orchestrator.create_session()
        orchestrator.set_contact_number(session, '51234567')
        orchestrator.attach_upload(session, 'front', card_jpeg)
        orchestrator.attach_upload(session, 'back', card_jpeg)

        orchestrator.run(session)

        deadline = time.time() + 2.0
        while session.progress_percent != 0 and time.time() < deadline:
            time.sleep(0.01)
        assert session.progress_percent == 0
        assert session.step_label == ''
        assert session.state is ScanState.COMPLETE

    def test_undecodable_upload_rejected(self, orchestrator):
        session = orchestrator.create_session()
        with pytest.raises(ImageDecodeError):
            orchestrator.attach_upload(session, 'front', b'not an image')
        assert session.front_image is None

    def test_to_dict(self, orchestrator, ready_session, card_fields):
        orchestrator.run(ready_session)
        result = ready_session.to_dict()
        assert result['state'] == 'complete'
        assert result['structured_record'] == card_fields
        assert result['error_message'] is None


class TestSaveEdits:
    """Test record edits after a completed scan."""

    def test_save_edits(self, orchestrator, ready_session, record_client, card_fields):
        orchestrator.run(ready_session)
        edited = dict(card_fields, name='AHMAD ALI HASSAN')

        assert orchestrator.save_edits(ready_session, edited) == {'success': True}

        record_client.update_card.assert_called_once_with('42', edited)
        assert ready_session.record == edited
        assert ready_session.state is ScanState.COMPLETE

    def test_save_edits_requires_complete(self, orchestrator, ready_session, record_client, card_fields):
        with pytest.raises(SessionStateError):
            orchestrator.save_edits(ready_session, card_fields)
        record_client.update_card.assert_not_called()


class TestImageBridge:
    """Test the preprocessing bridge."""

    def test_passthrough_by_default(self, card_frame):
        bridge = ImageBridge()
        image = CardImage(pixels=card_frame, side='front', cropped=False)

        assert bridge.process(image) is image
        assert bridge.get_stats() == {'images_processed': 1, 'images_enhanced': 0}

    def test_contrast_enhancement(self):
        bridge = ImageBridge(EnhancementConfig(enable_contrast=True))
        pixels = np.array([[[0, 128, 255]]], dtype=np.uint8)
        image = CardImage(pixels=pixels, side='back', cropped=False, encoded=b'original')

        result = bridge.process(image)

        assert result is not image
        assert result.pixels.tolist() == [[[0, 128, 255]]]
        assert result.encoded is None
        assert result.side is image.side
        assert bridge.get_stats()['images_enhanced'] == 1

        darker = CardImage(pixels=np.array([[[100]]], dtype=np.uint8), side='back', cropped=False)
        assert int(bridge.process(darker).pixels[0, 0, 0]) == 94
