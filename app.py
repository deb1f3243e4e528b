"""
ID Card Scanner Web Application
Thin coordinator for the layered card scanning system.

Provides REST API for:
- Live card detection on single frames or the local camera
- Still capture with card cropping (display copy + submission original)
- Dual-side card scan through the remote extraction service
- Record edits after a completed scan
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import base64
import json
from collections import OrderedDict
import cv2
import time
import logging
import os

# Import layers
from layer1_detection import (
    Boundary,
    CameraHandler,
    CardDetector,
    DetectionLoopConfig,
    DetectorSession,
    decode_image,
)
from layer2_crop import CropCascade, ImageSaver
from layer4_session import ScanOrchestrator, ScanState

# Import error handling
from error_handlers import (
    CameraError,
    ImageDecodeError,
    InvalidContactNumberError,
    ScannerError,
    ServiceError,
    SessionStateError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the kiosk frontend
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
AUTO_CAPTURE_ENABLED = os.environ.get('AUTO_CAPTURE_ENABLED', 'false').lower() in ('1', 'true', 'yes')
SAVE_DIR = os.environ.get('SAVE_DIR', "Logs/captured_cards")
COMPLETED_SESSION_LIMIT = int(os.environ.get('COMPLETED_SESSION_LIMIT', 16))


def status_code_for(error):
    """HTTP status for a scanner error"""
    if isinstance(error, (ImageDecodeError, InvalidContactNumberError)):
        return 400
    if isinstance(error, SessionStateError):
        return 422
    if isinstance(error, ServiceError):
        return 502
    if isinstance(error, CameraError):
        return 503
    return 500


class ScannerCoordinator:
    """
    Coordinates the scanning pipeline across layers
    Thin wrapper that delegates to layer-specific components
    """

    def __init__(self, camera_index, save_dir, auto_capture_enabled=False,
                 completed_session_limit=COMPLETED_SESSION_LIMIT):
        logger.info("Initializing ScannerCoordinator")

        # Layer 1: Frame source and live detection
        self.camera = CameraHandler(camera_index=camera_index)
        self.detector = CardDetector()
        self.detector_session = DetectorSession(
            frame_source=self.get_camera_frame,
            detector=self.detector,
            config=DetectionLoopConfig(auto_capture_enabled=auto_capture_enabled)
        )
        # Frames posted by API clients never mix into the camera stream's history
        self.request_session = DetectorSession(detector=self.detector)

        # Layer 2: Crop cascade and persistence
        self.cascade = CropCascade(detector=self.detector)
        self.image_saver = ImageSaver(base_dir=save_dir)

        # Layer 3 + 4: Extraction clients behind the scan orchestrator
        self.orchestrator = ScanOrchestrator(cascade=self.cascade)

        # Most recent completed sessions by record id, for later edits
        self.completed_sessions = OrderedDict()
        self.completed_session_limit = completed_session_limit

        logger.info("ScannerCoordinator initialized successfully")

    def initialize_camera(self):
        """
        Initialize camera (Layer 1)

        Returns:
            bool: True if successful, False otherwise
        """
        try:
            return self.camera.initialize()
        except CameraError as e:
            logger.error(f"Camera initialization failed: {e.message}")
            return False

    def get_camera_frame(self):
        """Frame source for the live detection loop (None if unavailable)"""
        try:
            if not self.camera.is_opened():
                self.camera.initialize()
            return self.camera.get_frame()
        except CameraError as e:
            logger.debug(f"Failed to get camera frame: {e.message}")
            return None

    def release_camera(self):
        """Stop live detection and release camera resources (Layer 1)"""
        self.detector_session.stop()
        self.camera.release()

    def detect(self, frame):
        """
        Run one posted frame through the request detector session

        Returns:
            dict: Single-frame sample and stable state
        """
        state = self.request_session.process_frame(frame)
        sample = self.request_session.last_sample
        return {
            "success": True,
            "sample": sample.to_dict() if sample else None,
            "state": state.to_dict()
        }

    def capture(self, frame, side, boundary=None, encoded=None, from_camera=False):
        """
        Crop a still frame and save both variants (Layer 1 -> Layer 2)

        Args:
            frame: Captured still
            side: 'front' or 'back'
            boundary: Explicit boundary for this frame
            encoded: Original file bytes for uploads
            from_camera: Frame came from the local camera; without an explicit
                boundary the camera stream's last trusted boundary is used

        Returns:
            dict: Success response with file names and display image
        """
        if boundary is None and from_camera:
            boundary = self.detector_session.trusted_boundary()

        result = self.cascade.capture(frame, side, boundary=boundary, encoded=encoded)
        saved = self.image_saver.save_capture(result)

        display = base64.b64encode(result.cropped.to_bytes()).decode('ascii')
        return {
            "success": True,
            **result.to_dict(),
            "paths": saved,
            "display_image": f"data:image/jpeg;base64,{display}"
        }

    def scan(self, front_data, back_data, contact_number):
        """
        Execute full scan session with error handling:
        upload -> quality check -> preprocessing -> extraction -> validation

        Returns:
            tuple: (response dict, HTTP status)
        """
        session = self.orchestrator.create_session()

        if contact_number:
            self.orchestrator.set_contact_number(session, contact_number)
        if front_data:
            self.orchestrator.attach_upload(session, 'front', front_data)
        if back_data:
            self.orchestrator.attach_upload(session, 'back', back_data)

        self.orchestrator.run(session)
        result = session.to_dict()

        if session.state is ScanState.IDLE:
            return {"success": False, "error_code": "SESSION_NOT_READY", **result}, 422

        try:
            self.image_saver.save_result_json(result, session.session_id)
        except OSError as e:
            logger.warning(f"Could not save scan JSON: {e}")

        if session.state is ScanState.ERROR:
            return {"success": False, "error_code": "SCAN_FAILED", **result}, 502

        if session.record_id:
            self._remember_session(session)
        return {"success": True, **result}, 200

    def _remember_session(self, session):
        """Keep only the newest completed sessions; older ids are forwarded as-is"""
        self.completed_sessions[session.record_id] = session
        self.completed_sessions.move_to_end(session.record_id)
        while len(self.completed_sessions) > self.completed_session_limit:
            record_id, _ = self.completed_sessions.popitem(last=False)
            logger.debug(f"Dropped completed session for record {record_id}")

    def save_edits(self, card_id, card_data):
        """Forward an edited field map to the record service"""
        session = self.completed_sessions.get(card_id)
        if session is not None:
            return self.orchestrator.save_edits(session, card_data)
        return self.orchestrator.record_client.update_card(card_id, card_data)


def read_request_image(field='image'):
    """
    Image bytes from a multipart file or a JSON base64 field

    Returns:
        bytes or None
    """
    if field in request.files:
        return request.files[field].read()

    payload = request.get_json(silent=True) or {}
    encoded = payload.get(field)
    if encoded is None or encoded == '':
        return None
    if not isinstance(encoded, str):
        raise ImageDecodeError(field, reason="expected a base64 string")
    if ',' in encoded and encoded.startswith('data:'):
        encoded = encoded.split(',', 1)[1]
    try:
        return base64.b64decode(encoded, validate=True)
    except ValueError:
        raise ImageDecodeError(field, reason="invalid base64 data")


def read_request_value(name):
    """Plain value from a form field or JSON body"""
    if name in request.form:
        return request.form[name]
    payload = request.get_json(silent=True) or {}
    return payload.get(name)


def error_response(error):
    return jsonify(handle_error(error)), status_code_for(error)


# Initialize scanner coordinator
logger.info("Starting application initialization")

scanner = ScannerCoordinator(
    camera_index=CAMERA_INDEX,
    save_dir=SAVE_DIR,
    auto_capture_enabled=AUTO_CAPTURE_ENABLED
)


# ============================================================================
# Flask Routes - Live Preview
# ============================================================================

@app.route('/video_feed')
def video_feed():
    """Video streaming route with live card detection overlay"""
    logger.info("Video feed with overlay requested")

    def generate():
        logger.info("Starting video stream generator with overlay")
        scanner.initialize_camera()

        while True:
            frame = scanner.get_camera_frame()
            if frame is None:
                time.sleep(0.1)
                continue

            # The live loop already feeds this stream while it runs
            if not scanner.detector_session.is_detecting:
                scanner.detector_session.process_frame(frame)

            sample = scanner.detector_session.last_sample
            overlay = scanner.detector.draw_overlay(frame, sample) if sample else frame

            ret, buffer = cv2.imencode('.jpg', overlay)
            if not ret:
                continue
            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "card-scanner",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and configuration"""
    return jsonify({
        "success": True,
        "auto_capture_enabled": scanner.detector_session.config.auto_capture_enabled,
        "detecting": scanner.detector_session.is_detecting,
        "card_service_url": scanner.orchestrator.extraction_client.base_url,
        "detection": scanner.detector_session.state.to_dict(),
        "endpoints": {
            "health": "/health",
            "detect": "/api/detect",
            "detect_start": "/api/detect/start",
            "detect_reset": "/api/detect/reset",
            "capture": "/api/capture",
            "scan": "/api/scan",
            "cards": "/api/cards/<id>",
            "video_feed": "/video_feed"
        }
    })


@app.route("/api/detect", methods=["POST"])
def api_detect():
    """
    Run one frame through live detection.

    Request:
        - multipart/form-data 'image' or JSON {"image": "<base64>"}
    """
    try:
        data = read_request_image('image')
        if data is None:
            return jsonify({
                "success": False,
                "error": "No image provided",
                "error_code": "NO_IMAGE"
            }), 400

        frame = decode_image(data, source="detect")
        return jsonify(scanner.detect(frame))

    except ScannerError as e:
        return error_response(e)


@app.route("/api/detect/start", methods=["POST"])
def api_detect_start():
    """Start the live detection loop on the local camera"""
    started = scanner.detector_session.start()
    return jsonify({"success": True, "detecting": started})


@app.route("/api/detect/reset", methods=["POST"])
def api_detect_reset():
    """Stop live detection and clear all detection state"""
    logger.info("Detection reset requested")
    scanner.detector_session.stop()
    scanner.request_session.reset()
    return jsonify({
        "success": True,
        "state": scanner.request_session.state.to_dict(),
        "camera_state": scanner.detector_session.state.to_dict()
    })


@app.route("/api/capture", methods=["POST"])
def api_capture():
    """
    Capture one side of the card.

    Request:
        - 'image' (multipart or JSON base64); local camera frame if omitted
        - 'side': 'front' or 'back'
        - 'boundary' (optional): {"x", "y", "width", "height"}
    """
    side = read_request_value('side') or 'front'
    if side not in ('front', 'back'):
        return jsonify({
            "success": False,
            "error": f"Invalid side: {side}",
            "error_code": "INVALID_SIDE"
        }), 400

    try:
        boundary = None
        raw_boundary = read_request_value('boundary')
        if raw_boundary:
            if isinstance(raw_boundary, str):
                raw_boundary = json.loads(raw_boundary)
            boundary = Boundary.from_dict(raw_boundary)
    except (ValueError, KeyError, TypeError) as e:
        return jsonify({
            "success": False,
            "error": f"Invalid boundary: {e}",
            "error_code": "INVALID_BOUNDARY"
        }), 400

    try:
        data = read_request_image('image')
        if data is not None:
            frame = decode_image(data, source=f"{side} capture")
        else:
            scanner.camera.initialize()
            frame = scanner.camera.get_frame()

        result = scanner.capture(
            frame, side, boundary=boundary, encoded=data, from_camera=data is None
        )
        logger.info(f"Captured {side} side using {result['strategy']}")
        return jsonify(result)

    except ScannerError as e:
        return error_response(e)


@app.route("/api/scan", methods=["POST"])
def api_scan():
    """
    Scan both sides of a card.

    Request:
        - multipart/form-data 'frontImage', 'backImage', 'mobileNumber'

    Response:
        Session result (state, progress, quality label, confidence,
        structured record, error message)
    """
    logger.info("Scan request received")

    try:
        front_data = read_request_image('frontImage')
        back_data = read_request_image('backImage')
        contact_number = read_request_value('mobileNumber')

        result, status = scanner.scan(front_data, back_data, contact_number)
        logger.info(f"Sending scan response: {result.get('state')}")
        return jsonify(result), status

    except ScannerError as e:
        return error_response(e)


@app.route("/api/cards/<card_id>", methods=["PUT"])
def api_update_card(card_id):
    """Forward an edited field map to the record service"""
    card_data = request.get_json(silent=True)
    if not isinstance(card_data, dict):
        return jsonify({
            "success": False,
            "error": "Card data must be a JSON object",
            "error_code": "INVALID_CARD_DATA"
        }), 400

    try:
        response = scanner.save_edits(card_id, card_data)
        return jsonify({"success": True, "data": response})

    except ScannerError as e:
        return error_response(e)


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("ID CARD SCANNER WEB SERVER")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_detection/   - Camera, sharpness, card detection, stability")
    print("  layer2_crop/        - Crop cascade and image saving")
    print("  layer3_extraction/  - Card service clients and field validation")
    print("  layer4_session/     - Scan session orchestration")
    print(f"  {SAVE_DIR}/")
    print("    ├── captured_images/   - Display crops and originals")
    print("    └── captured_json/     - Scan results")
    print("\n📡 API Endpoints:")
    print("  GET  /health            - Health check")
    print("  GET  /api/status        - Service status")
    print("  POST /api/detect        - Detect card in one frame")
    print("  POST /api/detect/reset  - Stop and reset live detection")
    print("  POST /api/capture       - Capture and crop one side")
    print("  POST /api/scan          - Scan both sides")
    print("  PUT  /api/cards/<id>    - Save edited card data")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX}")
    print(f"  Auto capture: {'ON' if AUTO_CAPTURE_ENABLED else 'OFF (manual capture)'}")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, debug=False, threaded=True)
