"""
Runtime configuration for the attendance backend.
Every value can be overridden through an environment variable.
"""
import os

# Recognition scheduling
SCAN_INTERVAL_SECONDS = float(os.getenv("SCAN_INTERVAL_SECONDS", "3"))
SCAN_COOLDOWN_SECONDS = float(os.getenv("SCAN_COOLDOWN_SECONDS", "4"))
MATCH_CONFIDENCE_THRESHOLD = float(os.getenv("MATCH_CONFIDENCE_THRESHOLD", "0.7"))
MATCH_DISPLAY_SECONDS = float(os.getenv("MATCH_DISPLAY_SECONDS", "3"))
RECOGNIZER_TIMEOUT_SECONDS = float(os.getenv("RECOGNIZER_TIMEOUT_SECONDS", "15"))
SCANNER_AUTOSTART = os.getenv("SCANNER_AUTOSTART", "1") == "1"

# Attendance ledger
ATTENDANCE_WINDOW_MINUTES = int(os.getenv("ATTENDANCE_WINDOW_MINUTES", "60"))

# Recognizer backend: "gemini" (cloud) or "insightface" (local)
RECOGNIZER_BACKEND = os.getenv("RECOGNIZER_BACKEND", "gemini").lower()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", os.getenv("API_KEY", ""))
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
INSIGHTFACE_MODEL = os.getenv("INSIGHTFACE_MODEL", "buffalo_l")

# Camera; leave CAMERA_SOURCE empty when the browser posts frames itself
CAMERA_SOURCE = os.getenv("CAMERA_SOURCE", "")
CAMERA_TYPE = os.getenv("CAMERA_TYPE", "webcam")
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./faceguard.db")

# Logging
LOG_FILE = os.getenv("LOG_FILE", "faceguard.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
