"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for card scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Acquisition (camera / still image)
class AcquisitionError(ScannerError):
    """Camera or image source could not supply a frame"""
    pass


class CameraError(AcquisitionError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Initialize the camera before requesting frames"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to capture frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


class ImageDecodeError(AcquisitionError):
    """Uploaded or stored image could not be decoded"""
    def __init__(self, source=None, reason=None):
        super().__init__(
            message="Could not read image data",
            error_code="INVALID_IMAGE",
            details={
                "source": source,
                "reason": reason,
                "suggestion": "Upload a JPEG or PNG photo of the card"
            }
        )


# Layer 2 Errors - Cropping (internal, never surfaced by the cascade)
class CropError(ScannerError):
    """A single cropping strategy could not produce an image"""
    def __init__(self, reason, boundary=None):
        super().__init__(
            message=f"Crop failed: {reason}",
            error_code="CROP_FAILED",
            details={"boundary": boundary}
        )


# Layer 3 Errors - Remote services
class ServiceError(ScannerError):
    """Remote extraction / record service errors"""
    def __init__(self, message, error_code, status_code=None, details=None):
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message=message, error_code=error_code, details=details)


class ExtractionServiceError(ServiceError):
    """Card field extraction request failed"""
    def __init__(self, message, status_code=None, details=None):
        super().__init__(
            message=message,
            error_code="EXTRACTION_FAILED",
            status_code=status_code,
            details=details
        )


class RecordServiceError(ServiceError):
    """Card record update request failed"""
    def __init__(self, message, status_code=None, details=None):
        super().__init__(
            message=message,
            error_code="RECORD_UPDATE_FAILED",
            status_code=status_code,
            details=details
        )


# Layer 4 Errors - Scan session
class SessionError(ScannerError):
    """Scan session errors"""
    pass


class InvalidContactNumberError(SessionError):
    """Contact number failed its format check"""
    def __init__(self, value):
        super().__init__(
            message="Please enter a valid 8-digit mobile number that does not start with 0 or +965",
            error_code="INVALID_CONTACT_NUMBER",
            details={"value": value}
        )


class SessionStateError(SessionError):
    """Operation not allowed in the session's current state"""
    def __init__(self, state, operation):
        super().__init__(
            message=f"Cannot {operation} while session is {state}",
            error_code="INVALID_SESSION_STATE",
            details={"state": state, "operation": operation}
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
