"""
Pytest configuration and fixtures for the card scanner tests.
"""
import pytest
import os
import sys
import tempfile

import cv2
import numpy as np

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(__file__))

# Keep saved captures out of the working tree
os.environ.setdefault('SAVE_DIR', tempfile.mkdtemp(prefix="card-scanner-"))


@pytest.fixture
def card_frame():
    """640x480 dark frame with a bright 320x200 card at (160, 140)."""
    frame = np.full((480, 640, 3), 40, dtype=np.uint8)
    frame[140:340, 160:480] = 200
    return frame


@pytest.fixture
def blank_frame():
    """Uniform 640x480 frame with nothing to detect."""
    return np.full((480, 640, 3), 40, dtype=np.uint8)


@pytest.fixture
def card_jpeg(card_frame):
    """JPEG bytes of the synthetic card frame."""
    ok, buffer = cv2.imencode('.jpg', card_frame)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def card_fields():
    """Well-formed structured record from the extraction service."""
    return {
        'civilIdNo': '289010112345',
        'name': 'AHMAD ALI',
        'nationality': 'KWT',
        'sex': 'M',
        'birthDate': '1989-01-01',
        'expiryDate': '2029-01-01',
    }


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
