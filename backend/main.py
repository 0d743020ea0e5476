import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from attendance import AttendanceEngine
from camera_manager import CameraFrameSource, CameraType, camera_manager
from cloud_recognizer import GeminiRecognizer
from config import (
    CAMERA_SOURCE,
    CAMERA_TYPE,
    DATABASE_URL,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    INSIGHTFACE_MODEL,
    LOG_FILE,
    LOG_LEVEL,
    MATCH_CONFIDENCE_THRESHOLD,
    RECOGNIZER_BACKEND,
    SCANNER_AUTOSTART,
)
from database import StorePersistence, init_db
from errors import DecodeFailure
from export import export_filename, export_to_excel
from imaging import decode_image_payload, to_data_url
from logger_helper import create_logging_middleware, setup_logger
from scheduler import RecognitionScheduler
from stats import summarize
from store import EnrollmentStore, Store

logger = logging.getLogger("faceguard.api")

KIOSK_CAMERA_ID = "kiosk"

# Global service instances, created in lifespan
enrollments: Optional[EnrollmentStore] = None
engine: Optional[AttendanceEngine] = None
scheduler: Optional[RecognitionScheduler] = None
recognizer = None
persistence: Optional[StorePersistence] = None


def build_recognizer():
    """Create the recognizer selected by RECOGNIZER_BACKEND."""
    if RECOGNIZER_BACKEND == "insightface":
        from recognition import FaceRecognizer
        try:
            return FaceRecognizer(model_name=INSIGHTFACE_MODEL, use_gpu=True)
        except Exception as e:
            logger.warning("GPU initialization failed: %s, falling back to CPU", e)
            return FaceRecognizer(model_name=INSIGHTFACE_MODEL, use_gpu=False)

    if not GEMINI_API_KEY:
        logger.warning("GEMINI_API_KEY is not set; recognition calls will fail")
    return GeminiRecognizer(api_key=GEMINI_API_KEY, model=GEMINI_MODEL)


def build_video_source():
    """Open the server-side camera, or return None when the browser posts frames."""
    if not CAMERA_SOURCE:
        return None
    if not camera_manager.add_camera(KIOSK_CAMERA_ID, CAMERA_SOURCE, CameraType(CAMERA_TYPE)):
        logger.error("Camera %s unavailable; server-side scanning disabled", CAMERA_SOURCE)
        return None
    return CameraFrameSource(camera_manager, KIOSK_CAMERA_ID)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    global enrollments, engine, scheduler, recognizer, persistence

    setup_logger(LOG_FILE, LOG_LEVEL)

    enrollments = EnrollmentStore()
    ledger = Store()
    persistence = StorePersistence(init_db(DATABASE_URL))
    persistence.load(enrollments, ledger)
    persistence.attach(enrollments, ledger)

    engine = AttendanceEngine(ledger)
    recognizer = build_recognizer()
    video_source = build_video_source()
    scheduler = RecognitionScheduler(enrollments, engine, recognizer, video_source)

    if SCANNER_AUTOSTART and video_source is not None:
        scheduler.start()

    yield

    await scheduler.close()
    if hasattr(recognizer, "aclose"):
        await recognizer.aclose()
    persistence.detach()
    camera_manager.close_all()
    logger.info("Shutting down...")


app = FastAPI(
    title="FaceGuard Attendance",
    description="Webcam attendance kiosk backed by a face recognition service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_logging_middleware(app, logging.getLogger("faceguard.http"))


def _require_services():
    if engine is None or scheduler is None or enrollments is None:
        raise HTTPException(status_code=503, detail="Service not initialized")


def _record_to_dict(record):
    return {
        "id": record.id,
        "name": record.identity_name,
        "timestamp": record.timestamp.isoformat(),
        "status": record.status.value,
        "confidence": record.confidence,
    }


def _identity_to_dict(identity):
    image = identity.reference_image
    return {
        "id": identity.id,
        "name": identity.name,
        "image": image if image.startswith("data:") else f"data:image/jpeg;base64,{image}",
        "enrolled_at": identity.enrolled_at.isoformat(),
    }


@app.get("/health")
async def health_check():
    """Health check endpoint with recognizer info."""
    _require_services()
    provider_info = recognizer.get_provider_info() if hasattr(recognizer, "get_provider_info") else {}
    return {
        "status": "running",
        "recognizer": provider_info,
        "threshold": MATCH_CONFIDENCE_THRESHOLD,
        "enrolled": len(enrollments),
        "scanner": _scanner_status(),
    }

# Enrollment Endpoints

def _enroll(name: str, image_bytes: bytes):
    try:
        decode_image_payload(image_bytes)
    except DecodeFailure:
        raise HTTPException(status_code=400, detail="Invalid image format")
    try:
        identity = enrollments.add(name, to_data_url(image_bytes))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "message": "Person enrolled successfully",
        "id": identity.id,
        "name": identity.name,
    }


@app.post("/enrollments/")
async def add_enrollment(name: str = Form(...), file: UploadFile = File(...)):
    """Enroll a person from an uploaded photo."""
    _require_services()
    return _enroll(name, await file.read())


@app.post("/enrollments/capture")
async def capture_enrollment(name: str = Form(...), image_base64: str = Form(...)):
    """Enroll a person from a camera capture (data URL or base64)."""
    _require_services()
    try:
        image_bytes = decode_image_payload(image_base64)
    except DecodeFailure:
        raise HTTPException(status_code=400, detail="Invalid image format")
    return _enroll(name, image_bytes)


@app.get("/enrollments/")
async def list_enrollments():
    _require_services()
    return {"enrollments": [_identity_to_dict(i) for i in enrollments.list_identities()]}


@app.delete("/enrollments/{identity_id}")
async def delete_enrollment(identity_id: str):
    _require_services()
    if not enrollments.remove(identity_id):
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return {"message": "Enrollment removed"}

# Attendance Endpoints

@app.get("/attendance/")
async def list_attendance(limit: int = 50):
    """List recent attendance records, newest first."""
    _require_services()
    return {"attendance": [_record_to_dict(r) for r in engine.list_recent(limit)]}


@app.delete("/attendance/")
async def clear_attendance(confirm: bool = False):
    """Clear all attendance records. Requires confirm=true."""
    _require_services()
    if not confirm:
        raise HTTPException(status_code=400, detail="Pass confirm=true to clear all attendance records")
    engine.clear()
    return {"message": "All attendance records cleared"}


@app.get("/attendance/export")
async def export_attendance():
    """Download the ledger as an Excel workbook."""
    _require_services()
    records = engine.list_all()
    if not records:
        raise HTTPException(status_code=400, detail="No attendance records to export.")
    return Response(
        content=export_to_excel(records),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'}
    )


@app.get("/stats/")
async def get_stats():
    _require_services()
    return summarize(engine.list_all(), len(enrollments))

# Scanner Endpoints

def _scanner_status():
    status = scheduler.status()
    status["camera_id"] = getattr(scheduler.video_source, "camera_id", None)
    return status


@app.get("/scanner/status")
async def scanner_status():
    _require_services()
    return _scanner_status()


@app.post("/scanner/start")
async def start_scanner():
    _require_services()
    if scheduler.video_source is None:
        raise HTTPException(status_code=400, detail="No server-side camera configured")
    scheduler.start()
    return _scanner_status()


@app.post("/scanner/stop")
async def stop_scanner():
    _require_services()
    await scheduler.stop()
    return _scanner_status()


@app.post("/scanner/camera")
async def select_scan_camera(camera_id: str = Form(...)):
    """Scan frames from a registered camera."""
    _require_services()
    if camera_manager.get_camera_info(camera_id) is None:
        raise HTTPException(status_code=404, detail=f"Camera {camera_id} not found")
    scheduler.video_source = CameraFrameSource(camera_manager, camera_id)
    return _scanner_status()


@app.post("/scanner/tick")
async def run_scan():
    """Run one capture/recognition cycle now (subject to the cooldown)."""
    _require_services()
    detections = await scheduler.tick()
    return {"detections": [d.model_dump(mode="json") for d in detections], "scanner": _scanner_status()}


@app.post("/process-frame/")
async def process_frame(file: UploadFile = File(...)):
    """Scan a frame captured by the browser."""
    _require_services()
    try:
        frame = decode_image_payload(await file.read())
    except DecodeFailure:
        raise HTTPException(status_code=400, detail="Invalid image format")
    detections = await scheduler.scan_frame(frame)
    return {"detections": [d.model_dump(mode="json") for d in detections], "scanner": _scanner_status()}

# Camera Management Endpoints

@app.get("/cameras/list")
async def list_cameras():
    cameras = camera_manager.list_cameras()
    return {"cameras": cameras, "count": len(cameras)}


@app.post("/cameras/add")
async def add_camera(
    camera_id: str = Form(...),
    source: str = Form(...),
    camera_type: str = Form(...)
):
    try:
        cam_type = CameraType(camera_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid camera type: {camera_type}")

    if not camera_manager.add_camera(camera_id, source, cam_type):
        raise HTTPException(status_code=500, detail=f"Failed to add camera {camera_id}")
    return {
        "message": f"Camera {camera_id} added successfully",
        "camera": camera_manager.get_camera_info(camera_id)
    }


@app.delete("/cameras/{camera_id}")
async def remove_camera(camera_id: str):
    if scheduler is not None and getattr(scheduler.video_source, "camera_id", None) == camera_id:
        await scheduler.stop()
        scheduler.video_source = None
        logger.info("Scan camera %s removed; scanner stopped", camera_id)
    if camera_manager.remove_camera(camera_id):
        return {"message": f"Camera {camera_id} removed"}
    raise HTTPException(status_code=404, detail=f"Camera {camera_id} not found")


if __name__ == "__main__":
    import uvicorn
    from config import HOST, PORT

    uvicorn.run(app, host=HOST, port=PORT)
