import asyncio
import base64
import io
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from PIL import Image

import camera_manager as camera_module
from attendance import AttendanceEngine
from scheduler import RecognitionScheduler
from schemas import Match
from store import EnrollmentStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_png(color=(200, 120, 40), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(color=(200, 120, 40)) -> str:
    return "data:image/png;base64," + base64.b64encode(make_png(color)).decode("ascii")


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRecognizer:
    """Returns canned (name, confidence) pairs and remembers every call."""

    def __init__(self, matches=(), error=None):
        self.matches = list(matches)
        self.error = error
        self.calls = []

    async def identify(self, probe, gallery):
        self.calls.append((probe, list(gallery)))
        if self.error is not None:
            raise self.error
        return [Match(name=name, confidence=confidence) for name, confidence in self.matches]


class BlockingRecognizer(FakeRecognizer):
    """Holds every call open until ``release`` is set."""

    def __init__(self, matches=()):
        super().__init__(matches)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def identify(self, probe, gallery):
        self.calls.append((probe, list(gallery)))
        self.entered.set()
        await self.release.wait()
        return [Match(name=name, confidence=confidence) for name, confidence in self.matches]


class FakeVideoSource:
    def __init__(self, frame=b"probe-frame"):
        self.frame = frame
        self.captures = 0
        self.closed = False

    def capture_frame(self):
        self.captures += 1
        return self.frame

    def close(self):
        self.closed = True


class FakeCapture:
    """Stands in for cv2.VideoCapture. Read numbers count across all instances."""

    instances = []
    reads = 0
    fail_reads = set()
    raise_reads = set()

    def __init__(self, source, *args):
        self.source = source
        self.opened = source != 99
        self.frames_left = 3
        self.released = False
        FakeCapture.instances.append(self)

    def isOpened(self):
        return self.opened

    def read(self):
        FakeCapture.reads += 1
        if FakeCapture.reads in FakeCapture.raise_reads:
            raise RuntimeError("capture backend hiccup")
        if FakeCapture.reads in FakeCapture.fail_reads or self.frames_left <= 0:
            return False, None
        self.frames_left -= 1
        return True, np.full((16, 16, 3), 127, dtype=np.uint8)

    def grab(self):
        return True

    def retrieve(self):
        return self.read()

    def get(self, prop):
        return 16

    def set(self, prop, value):
        return True

    def release(self):
        self.released = True


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def enrollments():
    return EnrollmentStore()


@pytest.fixture
def engine():
    return AttendanceEngine()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def video_source():
    return FakeVideoSource()


@pytest.fixture
def scheduler(enrollments, engine, recognizer, video_source, clock):
    return RecognitionScheduler(
        enrollments,
        engine,
        recognizer,
        video_source,
        interval=3,
        cooldown=4,
        confidence_threshold=0.7,
        match_display=3,
        timeout=1.0,
        clock=clock
    )


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def fake_capture(monkeypatch):
    FakeCapture.instances = []
    FakeCapture.reads = 0
    FakeCapture.fail_reads = set()
    FakeCapture.raise_reads = set()
    monkeypatch.setattr(camera_module.cv2, "VideoCapture", FakeCapture)
    return FakeCapture
