"""
Shared fixtures for the MenuScan tests.
"""

import io
import json
import threading

import pytest
from PIL import Image, ImageDraw

from menuscan.models.data_models import RawImage
from menuscan.services.errors import AnalysisCancelledError
from menuscan.services.image_optimizer import ImageOptimizer
from menuscan.services.menu_processor import MenuProcessor
from menuscan.services.privacy_sanitizer import PrivacySanitizer
from menuscan.services.result_cache import ResultCache


def make_image_bytes(width=800, height=1000, color=(215, 210, 200), fmt="JPEG", text_lines=6):
    """Encoded test photo: light background with dark text-like bars."""
    image = Image.new("RGB", (width, height), color)
    draw = ImageDraw.Draw(image)
    for line in range(text_lines):
        top = height // 5 + line * (height // (text_lines * 2 + 2))
        draw.rectangle([width // 6, top, width // 6 + width // 2, top + max(2, height // 80)], fill=(20, 20, 20))
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def menu_reply(confidence=0.92, dishes=None, restaurant="Harbor Bistro"):
    """Inference reply text in the expected JSON shape."""
    if dishes is None:
        dishes = [
            {
                "name": "Caesar Salad",
                "description": "Romaine, parmesan, croutons",
                "price": "$12.99",
                "category": "starter",
                "allergens": ["dairy", "gluten"],
                "dietaryInfo": ["vegetarian"],
            },
            {
                "name": "Grilled Salmon",
                "description": None,
                "price": "$24.99",
                "category": "mainCourse",
                "allergens": ["fish"],
                "dietaryInfo": ["glutenFree", "healthy"],
            },
        ]
    return json.dumps({"restaurantName": restaurant, "dishes": dishes, "confidence": confidence})


class FakeAnalyzer:
    """Stands in for AIMenuAnalyzer; honours the cancellation token like the real transport."""

    def __init__(self, reply=None, delay=0.0, error=None, configured=True):
        self.reply = reply if reply is not None else menu_reply()
        self.delay = delay
        self.error = error
        self.is_configured = configured
        self.calls = []
        self.started = threading.Event()

    def analyze_menu(self, image, detailed=True, cancel_token=None, max_retries=None, deadline=None):
        self.calls.append({"image": image, "detailed": detailed, "max_retries": max_retries,
                           "deadline": deadline})
        self.started.set()
        if self.delay:
            if cancel_token is not None and cancel_token.wait(self.delay):
                raise AnalysisCancelledError("aborted")
        if self.error is not None:
            raise self.error
        return self.reply


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Recorder:
    """Collects processor callback values."""

    def __init__(self):
        self.stages = []
        self.progress = []
        self.results = []

    def on_stage(self, stage):
        self.stages.append(stage)

    def on_progress(self, value):
        self.progress.append(value)

    def on_result(self, result):
        self.results.append(result)


@pytest.fixture
def sample_image_data():
    return make_image_bytes()


@pytest.fixture
def raw_image(sample_image_data):
    return RawImage.from_bytes(sample_image_data)


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def processor(fake_analyzer, recorder):
    menu_processor = MenuProcessor(
        analyzer=fake_analyzer,
        optimizer=ImageOptimizer(),
        cache=ResultCache(),
        sanitizer=PrivacySanitizer(),
        on_stage_changed=recorder.on_stage,
        on_progress=recorder.on_progress,
        on_result=recorder.on_result,
        reset_delay=0.05,
    )
    yield menu_processor
    menu_processor.shutdown()


@pytest.fixture
def app(processor):
    from menuscan.app import create_app
    return create_app('testing', processor=processor)


@pytest.fixture
def client(app):
    return app.test_client()
