"""
Layer 4 — Scan Session Orchestrator
Sequences quality analysis, preprocessing, remote extraction and validation
for a front/back card pair.

States:
    idle -> quality_check -> preprocessing -> extracting -> validating -> complete
    any non-idle state -> error (terminal; start a new session to retry)
"""
import re
import uuid
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from error_handlers import (
    InvalidContactNumberError,
    ScannerError,
    SessionStateError,
)
from layer1_detection import decode_image, file_sharpness
from layer2_crop import CaptureResult, CardImage, CardSide, CropCascade
from layer3_extraction import (
    ValidationResult,
    get_extraction_client,
    get_record_client,
    validate_card_data,
)
from .preprocess import ImageBridge

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = 'idle'
    QUALITY_CHECK = 'quality_check'
    PREPROCESSING = 'preprocessing'
    EXTRACTING = 'extracting'
    VALIDATING = 'validating'
    COMPLETE = 'complete'
    ERROR = 'error'


@dataclass
class SessionConfig:
    """Configuration for scan sessions."""
    progress_reset_delay_s: Optional[float] = 2.0   # None keeps 100% on screen
    low_confidence_threshold: int = 70


def quality_label(front_score: float, back_score: float) -> str:
    """Both sides must clear a band for the pair to earn its label."""
    if front_score > 80 and back_score > 80:
        return 'excellent'
    if front_score > 60 and back_score > 60:
        return 'good'
    if front_score > 40 and back_score > 40:
        return 'fair'
    return 'poor'


def normalize_contact_number(value) -> str:
    return re.sub(r'\s', '', str(value or ''))


def is_valid_contact_number(value) -> bool:
    """Eight digits, not starting with 0 or the +965 country prefix."""
    number = normalize_contact_number(value)
    if number.startswith('0') or number.startswith('+965'):
        return False
    return len(number) == 8 and number.isdigit()


@dataclass
class ScanSession:
    """State of one front/back scan. Mutated only by ScanOrchestrator."""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    front_image: Optional[CardImage] = None      # submission originals
    back_image: Optional[CardImage] = None
    front_display: Optional[CardImage] = None    # cropped display copies
    back_display: Optional[CardImage] = None
    contact_number: Optional[str] = None
    state: ScanState = ScanState.IDLE
    progress_percent: int = 0
    step_label: str = ''
    image_quality_label: str = 'poor'
    front_quality: Optional[int] = None
    back_quality: Optional[int] = None
    extraction_confidence: int = 0
    validation: Optional[ValidationResult] = None
    record: Optional[Dict] = None
    record_id: Optional[str] = None
    error_message: Optional[str] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def is_ready(self) -> bool:
        return (
            self.front_image is not None
            and self.back_image is not None
            and is_valid_contact_number(self.contact_number)
        )

    def to_dict(self) -> Dict:
        """Result surfaced to the caller."""
        with self._lock:
            return {
                'session_id': self.session_id,
                'state': self.state.value,
                'progress_percent': self.progress_percent,
                'step_label': self.step_label,
                'image_quality_label': self.image_quality_label,
                'extraction_confidence': self.extraction_confidence,
                'issues': list(self.validation.issues) if self.validation else [],
                'structured_record': self.record,
                'record_id': self.record_id,
                'error_message': self.error_message
            }


SessionListener = Callable[[ScanSession], None]


class ScanOrchestrator:
    """
    Runs scan sessions step by step. Holds no per-session state, so
    independent sessions can run concurrently.
    """

    def __init__(self,
                 extraction_client=None,
                 record_client=None,
                 preprocessor: Optional[ImageBridge] = None,
                 cascade: Optional[CropCascade] = None,
                 config: Optional[SessionConfig] = None,
                 quality_scorer: Callable[[bytes], int] = file_sharpness):
        """
        Initialize orchestrator

        Args:
            extraction_client: Remote extraction client (singleton if None)
            record_client: Remote record update client (singleton if None)
            preprocessor: Preprocessing bridge (passthrough if None)
            cascade: Crop cascade used for uploaded stills
            config: Session configuration
            quality_scorer: Whole-file sharpness estimator
        """
        self.extraction_client = extraction_client or get_extraction_client()
        self._record_client = record_client
        self.preprocessor = preprocessor or ImageBridge()
        self.cascade = cascade or CropCascade()
        self.config = config or SessionConfig()
        self.quality_scorer = quality_scorer
        self._listeners: List[SessionListener] = []

        logger.info("ScanOrchestrator initialized")

    @property
    def record_client(self):
        if self._record_client is None:
            self._record_client = get_record_client()
        return self._record_client

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: SessionListener) -> Callable[[], None]:
        """Register a listener called on every session change."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, session: ScanSession):
        for cb in list(self._listeners):
            try:
                cb(session)
            except Exception as e:
                logger.warning(f"Session listener failed: {e}")

    # ------------------------------------------------------------------
    # Session inputs
    # ------------------------------------------------------------------

    def create_session(self) -> ScanSession:
        session = ScanSession()
        logger.info(f"Scan session {session.session_id} created")
        return session

    def set_contact_number(self, session: ScanSession, value) -> str:
        """
        Store the customer contact number after its format check.

        Raises:
            InvalidContactNumberError: If the number is malformed
            SessionStateError: If the session already left idle
        """
        self._require_idle(session, 'set contact number')
        if not is_valid_contact_number(value):
            raise InvalidContactNumberError(value)

        session.contact_number = normalize_contact_number(value)
        self._notify(session)
        return session.contact_number

    def attach_capture(self, session: ScanSession, side, capture: CaptureResult):
        """
        Store a captured side. The original goes to extraction; the crop is
        kept for display only.
        """
        self._require_idle(session, 'attach image')
        side = CardSide(side)

        if side is CardSide.FRONT:
            session.front_image = capture.original
            session.front_display = capture.cropped
        else:
            session.back_image = capture.original
            session.back_display = capture.cropped

        logger.info(f"Session {session.session_id}: {side.value} side attached "
                    f"({capture.original.filename})")
        self._notify(session)

    def attach_upload(self, session: ScanSession, side, data: bytes) -> CaptureResult:
        """
        Store an uploaded photo of one side. The uploaded bytes are the
        original; the display copy comes from the crop cascade.

        Raises:
            ImageDecodeError: If the upload is not a readable image
        """
        self._require_idle(session, 'attach image')
        frame = decode_image(data, source=f"{CardSide(side).value} upload")
        capture = self.cascade.capture(frame, side, boundary=None, encoded=data)
        self.attach_capture(session, side, capture)
        return capture

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def run(self, session: ScanSession) -> ScanSession:
        """
        Run every step in order. Returns the session in a terminal state,
        or still idle if inputs are missing.

        Raises:
            SessionStateError: If the session is not idle
        """
        self._require_idle(session, 'start scan')

        if not session.is_ready():
            missing = [name for name, present in (
                ('front image', session.front_image is not None),
                ('back image', session.back_image is not None),
                ('valid contact number', is_valid_contact_number(session.contact_number)),
            ) if not present]
            logger.info(f"Session {session.session_id} waiting for: {', '.join(missing)}")
            return session

        logger.info("=" * 60)
        logger.info(f"Starting scan session {session.session_id}")

        try:
            self._quality_check(session)
            front, back = self._preprocess(session)
            result = self._extract(session, front, back)
            self._validate(session, result.fields)
            self._complete(session)
        except ScannerError as e:
            logger.error(f"[Session] Failed with known error: {e.error_code}")
            self._fail(session, e.message)
        except Exception as e:
            logger.exception(f"[Session] Failed with unexpected error: {e}")
            self._fail(session, str(e) or type(e).__name__)

        logger.info("=" * 60)
        return session

    def _enter(self, session: ScanSession, state: ScanState, progress: int, label: str):
        with session._lock:
            session.state = state
            session.progress_percent = progress
            session.step_label = label
        logger.info(f"[{state.value}] {label} ({progress}%)")
        self._notify(session)

    def _quality_check(self, session: ScanSession):
        self._enter(session, ScanState.QUALITY_CHECK, 10, 'Analyzing image quality...')

        session.front_quality = self.quality_scorer(session.front_image.to_bytes())
        session.back_quality = self.quality_scorer(session.back_image.to_bytes())
        session.image_quality_label = quality_label(session.front_quality, session.back_quality)

        logger.info(f"Image quality: front={session.front_quality} back={session.back_quality} "
                    f"-> {session.image_quality_label}")

    def _preprocess(self, session: ScanSession):
        self._enter(session, ScanState.PREPROCESSING, 25, 'Preprocessing images...')
        return (
            self.preprocessor.process(session.front_image),
            self.preprocessor.process(session.back_image),
        )

    def _extract(self, session: ScanSession, front: CardImage, back: CardImage):
        self._enter(session, ScanState.EXTRACTING, 50, 'Extracting data from card...')

        result = self.extraction_client.scan_dual(front, back, session.contact_number)

        with session._lock:
            session.record = dict(result.fields)
            session.record_id = result.record_id
            session.progress_percent = 75
        self._notify(session)
        return result

    def _validate(self, session: ScanSession, fields: Dict):
        self._enter(session, ScanState.VALIDATING, 75, 'Validating extracted data...')

        validation = validate_card_data(fields)
        session.validation = validation
        session.extraction_confidence = validation.confidence

        if validation.confidence < self.config.low_confidence_threshold:
            logger.warning(f"Low confidence in extracted data: {validation.issues}")

    def _complete(self, session: ScanSession):
        self._enter(session, ScanState.COMPLETE, 100, 'Scan completed successfully!')
        self._schedule_progress_reset(session)

    def _fail(self, session: ScanSession, message: str):
        with session._lock:
            session.state = ScanState.ERROR
            session.progress_percent = 0
            session.step_label = ''
            session.error_message = f"Failed to scan card: {message}"
        logger.error(session.error_message)
        self._notify(session)

    def _schedule_progress_reset(self, session: ScanSession):
        """Clear the progress display after a short delay; not a state change."""
        delay = self.config.progress_reset_delay_s
        if delay is None:
            return

        def reset():
            with session._lock:
                if session.state is not ScanState.COMPLETE:
                    return
                session.progress_percent = 0
                session.step_label = ''
            self._notify(session)

        timer = threading.Timer(delay, reset)
        timer.daemon = True
        timer.start()

    def _require_idle(self, session: ScanSession, operation: str):
        if session.state is not ScanState.IDLE:
            raise SessionStateError(session.state.value, operation)

    # ------------------------------------------------------------------
    # After completion
    # ------------------------------------------------------------------

    def save_edits(self, session: ScanSession, card_data: Dict) -> Dict:
        """
        Send an edited field map straight to the record service. The
        session stays complete.

        Raises:
            SessionStateError: If the session is not complete or has no record id
            RecordServiceError: If the update fails
        """
        if session.state is not ScanState.COMPLETE or not session.record_id:
            raise SessionStateError(session.state.value, 'save card data')

        response = self.record_client.update_card(session.record_id, card_data)
        with session._lock:
            session.record = dict(card_data)
        logger.info(f"Card record {session.record_id} updated")
        return response
