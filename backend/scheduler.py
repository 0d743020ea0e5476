"""
Recognition scheduler.

Samples the video source on a fixed period, sends the probe frame plus the
enrolled gallery to the recognizer, and forwards confident, known matches to
the attendance engine. At most one recognizer call is in flight at a time and
calls are spaced by at least the scan cooldown.
"""
import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set

from attendance import AttendanceEngine
from config import (
    MATCH_CONFIDENCE_THRESHOLD,
    MATCH_DISPLAY_SECONDS,
    RECOGNIZER_TIMEOUT_SECONDS,
    SCAN_COOLDOWN_SECONDS,
    SCAN_INTERVAL_SECONDS,
)
from errors import CaptureUnavailable, DecodeFailure, RecognizerFailure
from imaging import decode_image_payload
from schemas import Detection, EnrolledIdentity, GalleryEntry, Match, utcnow
from store import EnrollmentStore

logger = logging.getLogger("faceguard.scheduler")


class VideoSource(Protocol):
    def capture_frame(self) -> Optional[bytes]:
        ...

    def close(self) -> None:
        ...


class Recognizer(Protocol):
    async def identify(self, probe: bytes, gallery: Sequence[GalleryEntry]) -> List[Match]:
        ...


def normalize_name(name: str) -> str:
    return name.strip().lower()


def build_gallery(identities: Sequence[EnrolledIdentity]) -> List[GalleryEntry]:
    """Decode every reference image, leaving out the ones that fail."""
    gallery = []
    for identity in identities:
        try:
            image = decode_image_payload(identity.reference_image, label=identity.name)
        except DecodeFailure as e:
            logger.debug("Skipping %s in gallery: %s", identity.name, e)
            continue
        gallery.append(GalleryEntry(label=identity.name, image=image))
    return gallery


class RecognitionScheduler:
    """Periodic capture -> recognize -> record loop."""

    def __init__(
        self,
        enrollments: EnrollmentStore,
        engine: AttendanceEngine,
        recognizer: Recognizer,
        video_source: Optional[VideoSource] = None,
        interval: float = SCAN_INTERVAL_SECONDS,
        cooldown: float = SCAN_COOLDOWN_SECONDS,
        confidence_threshold: float = MATCH_CONFIDENCE_THRESHOLD,
        match_display: float = MATCH_DISPLAY_SECONDS,
        timeout: Optional[float] = RECOGNIZER_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.enrollments = enrollments
        self.engine = engine
        self.recognizer = recognizer
        self.video_source = video_source
        self.interval = interval
        self.cooldown = timedelta(seconds=cooldown)
        self.confidence_threshold = confidence_threshold
        self.match_display = timedelta(seconds=match_display)
        self.timeout = timeout
        self.clock = clock

        self.last_scan_time: Optional[datetime] = None
        self.processing = False
        self.last_error: Optional[str] = None
        self.recognizer_calls = 0

        self._active_match: Optional[str] = None
        self._active_match_until: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        # Bumped on stop so results of calls dispatched earlier are dropped.
        self._generation = 0

    # -- state ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def active_match_label(self) -> Optional[str]:
        if self._active_match_until is not None and self.clock() >= self._active_match_until:
            self._active_match = None
            self._active_match_until = None
        return self._active_match

    def status(self) -> Dict:
        return {
            "running": self.running,
            "has_video_source": self.video_source is not None,
            "processing": self.processing,
            "active_match": self.active_match_label,
            "last_scan_time": self.last_scan_time.isoformat() if self.last_scan_time else None,
            "last_error": self.last_error,
            "recognizer_calls": self.recognizer_calls,
        }

    # -- cycle ------------------------------------------------------------

    async def tick(self) -> List[Detection]:
        """One timer firing: capture a frame from the video source and scan it."""
        ready = self._ready()
        if ready is None:
            return []
        now, identities = ready

        frame = self._capture()
        if frame is None:
            return []
        return await self._run_cycle(frame, now, identities)

    async def scan_frame(self, frame: bytes) -> List[Detection]:
        """Scan a frame supplied by the caller (e.g. posted by the browser)."""
        ready = self._ready()
        if ready is None:
            return []
        now, identities = ready
        return await self._run_cycle(frame, now, identities)

    def _ready(self):
        identities = self.enrollments.list_identities()
        if not identities:
            logger.debug("No enrolled identities, skipping scan")
            return None

        now = self.clock()
        if self.last_scan_time is not None and now - self.last_scan_time < self.cooldown:
            return None

        if self.processing:
            logger.debug("Recognition still in flight, skipping scan")
            return None

        return now, identities

    def _capture(self) -> Optional[bytes]:
        if self.video_source is None:
            logger.debug("No video source configured")
            return None
        try:
            return self.video_source.capture_frame()
        except CaptureUnavailable as e:
            logger.debug("Capture unavailable: %s", e)
            return None
        except Exception as e:
            logger.warning("Capture failed, skipping scan: %s", e)
            return None

    async def _run_cycle(self, frame: bytes, now: datetime, identities) -> List[Detection]:
        self.processing = True
        self.last_scan_time = now
        generation = self._generation

        try:
            gallery = build_gallery(identities)
            self.recognizer_calls += 1
            matches = await asyncio.wait_for(
                self.recognizer.identify(frame, gallery),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self.last_error = f"Recognizer timed out after {self.timeout}s"
            logger.warning(self.last_error)
            return []
        except RecognizerFailure as e:
            self.last_error = f"Recognition failed: {e}"
            logger.warning(self.last_error)
            return []
        except Exception as e:
            self.last_error = f"Recognition failed: {e}"
            logger.exception(self.last_error)
            return []
        finally:
            self.processing = False

        if generation != self._generation:
            logger.info("Scanner stopped during recognition, discarding result")
            return []

        self.last_error = None
        return self._accept(matches, identities)

    def _accept(self, matches: Sequence[Match], identities) -> List[Detection]:
        enrolled: Dict[str, EnrolledIdentity] = {}
        for identity in identities:
            enrolled.setdefault(normalize_name(identity.name), identity)

        detections = []
        for match in matches:
            identity = enrolled.get(normalize_name(match.name))
            if identity is None:
                logger.debug("Ignoring unknown label %r", match.name)
                continue
            if match.confidence <= self.confidence_threshold:
                logger.debug("Ignoring %s below threshold (%.3f)", match.name, match.confidence)
                continue

            name = identity.name.strip()
            now = self.clock()
            outcome = self.engine.record(name, now, confidence=match.confidence)
            self._active_match = name
            self._active_match_until = now + self.match_display
            detections.append(Detection(
                name=name,
                label=match.name,
                confidence=match.confidence,
                outcome=outcome
            ))
        return detections

    # -- timer ------------------------------------------------------------

    def start(self):
        """Start firing ``tick`` every ``interval`` seconds on the running loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Scanner started (interval=%ss, cooldown=%ss)",
                    self.interval, self.cooldown.total_seconds())

    async def _run(self):
        while True:
            task = asyncio.create_task(self.tick())
            self._inflight.add(task)
            task.add_done_callback(self._on_tick_done)
            await asyncio.sleep(self.interval)

    def _on_tick_done(self, task: asyncio.Task):
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scan cycle crashed", exc_info=task.exception())

    async def stop(self):
        """Stop the timer. In-flight recognizer calls finish but are ignored."""
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Scanner stopped")

    async def close(self):
        """Stop the timer and release the camera."""
        await self.stop()
        if self.video_source is not None:
            self.video_source.close()
