import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import cv2
import numpy as np

from config import JPEG_QUALITY

logger = logging.getLogger("faceguard.camera")


class CameraType(str, Enum):
    WEBCAM = "webcam"
    RTSP = "rtsp"
    HTTP = "http"
    FILE = "file"


class CameraManager:
    """
    Manages camera connections from various sources.
    Supports webcams, RTSP streams, HTTP/IP cameras, and video files.
    """

    def __init__(self):
        self.cameras: Dict[str, Dict] = {}
        self.lock = threading.RLock()

    @staticmethod
    def _open_capture(source: str, camera_type: CameraType):
        """Open a capture and read a test frame. Returns (capture, frame) or None."""
        if camera_type == CameraType.WEBCAM:
            cap = cv2.VideoCapture(int(source))
        elif camera_type == CameraType.RTSP:
            cap = cv2.VideoCapture(source, cv2.CAP_FFMPEG)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        elif camera_type in (CameraType.HTTP, CameraType.FILE):
            cap = cv2.VideoCapture(source)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        else:
            raise ValueError(f"Unsupported camera type: {camera_type}")

        if not cap.isOpened():
            logger.error("Failed to open camera source: %s", source)
            return None

        try:
            ret, frame = cap.read()
        except Exception as e:
            logger.error("Error reading test frame from %s: %s", source, e)
            ret, frame = False, None
        if not ret or frame is None:
            logger.error("Failed to read test frame from %s", source)
            cap.release()
            return None
        return cap, frame

    def add_camera(self, camera_id: str, source: str, camera_type: CameraType) -> bool:
        """Open a camera source and read a test frame from it."""
        with self.lock:
            if camera_id in self.cameras:
                self.remove_camera(camera_id)

            opened = self._open_capture(source, camera_type)
            if opened is None:
                return False
            cap, _ = opened

            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

            self.cameras[camera_id] = {
                "id": camera_id,
                "type": camera_type,
                "source": source,
                "capture": cap,
                "connected": True,
                "connected_at": datetime.now(),
                "last_frame_time": datetime.now(),
                "frame_count": 1,
                "width": width,
                "height": height,
            }
            logger.info("Camera %s added: %dx%d", camera_id, width, height)
            return True

    def remove_camera(self, camera_id: str) -> bool:
        """Remove and release a camera."""
        with self.lock:
            camera = self.cameras.pop(camera_id, None)
            if camera is None:
                return False
            camera["capture"].release()
            logger.info("Camera removed: %s", camera_id)
            return True

    def get_frame(self, camera_id: str) -> Optional[np.ndarray]:
        """
        Get the latest frame from a camera.

        A failed read marks the camera disconnected; the next call reads again.

        Returns:
            Frame as numpy array (BGR) or None if no frame is available
        """
        with self.lock:
            camera = self.cameras.get(camera_id)
            if not camera:
                return None

            cap = camera["capture"]

            try:
                # Network streams buffer; drop stale frames to get the newest one
                if camera["type"] in (CameraType.RTSP, CameraType.HTTP):
                    for _ in range(5):
                        if not cap.grab():
                            break
                    ret, frame = cap.retrieve()
                else:
                    ret, frame = cap.read()
            except Exception as e:
                logger.warning("Error reading frame from %s: %s", camera_id, e)
                camera["connected"] = False
                return None

            if not ret or frame is None:
                logger.warning("Failed to read frame from camera %s", camera_id)
                camera["connected"] = False
                return None

            camera["connected"] = True
            camera["last_frame_time"] = datetime.now()
            camera["frame_count"] += 1
            return frame

    def capture_jpeg(self, camera_id: str, quality: int = JPEG_QUALITY) -> Optional[bytes]:
        """Grab a frame and encode it as JPEG."""
        frame = self.get_frame(camera_id)
        if frame is None:
            return None
        try:
            success, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
        except cv2.error as e:
            logger.warning("Failed to encode frame from camera %s: %s", camera_id, e)
            return None
        if not success:
            logger.warning("Failed to encode frame from camera %s", camera_id)
            return None
        return buffer.tobytes()

    def is_connected(self, camera_id: str) -> bool:
        """Whether the camera's last read succeeded."""
        with self.lock:
            camera = self.cameras.get(camera_id)
            return bool(camera and camera["connected"])

    def reconnect_camera(self, camera_id: str) -> bool:
        """
        Reopen a camera from its original source. The camera stays registered
        (disconnected) when the source cannot be reopened.
        """
        with self.lock:
            camera = self.cameras.get(camera_id)
            if camera is None:
                return False

            logger.info("Reconnecting camera %s", camera_id)
            camera["capture"].release()
            opened = self._open_capture(camera["source"], camera["type"])
            if opened is None:
                camera["connected"] = False
                return False

            camera["capture"], _ = opened
            camera["connected"] = True
            camera["connected_at"] = datetime.now()
            camera["last_frame_time"] = datetime.now()
            camera["frame_count"] += 1
            return True

    def get_camera_info(self, camera_id: str) -> Optional[Dict]:
        """Get info for specific camera (JSON serializable)."""
        with self.lock:
            info = self.cameras.get(camera_id)
            if info is None:
                return None
            return {
                "id": camera_id,
                "type": info["type"].value,
                "source": info["source"],
                "connected": info["connected"],
                "connected_at": info["connected_at"].isoformat(),
                "last_frame_time": info["last_frame_time"].isoformat(),
                "frame_count": info["frame_count"],
                "width": info["width"],
                "height": info["height"],
            }

    def list_cameras(self) -> List[Dict]:
        with self.lock:
            return [self.get_camera_info(cam_id) for cam_id in self.cameras]

    def close_all(self):
        with self.lock:
            for camera in self.cameras.values():
                camera["capture"].release()
            self.cameras.clear()
            logger.info("All cameras closed")


class CameraFrameSource:
    """Video source for the scheduler backed by one managed camera."""

    def __init__(self, manager: CameraManager, camera_id: str, quality: int = JPEG_QUALITY):
        self.manager = manager
        self.camera_id = camera_id
        self.quality = quality

    def capture_frame(self) -> Optional[bytes]:
        if not self.manager.is_connected(self.camera_id):
            if not self.manager.reconnect_camera(self.camera_id):
                return None
        return self.manager.capture_jpeg(self.camera_id, self.quality)

    def close(self):
        self.manager.remove_camera(self.camera_id)


# Global camera manager instance
camera_manager = CameraManager()
