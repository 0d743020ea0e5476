import gzip
import logging
import os
import shutil
import time
from logging.handlers import TimedRotatingFileHandler

from fastapi import Request

from config import LOG_FILE, LOG_LEVEL

LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class CompressingRotatingHandler(TimedRotatingFileHandler):
    """
    Weekly rotation (every Monday at midnight) that also rolls over once the
    file reaches LOG_MAX_SIZE. Rotated files are gzip-compressed.
    """

    def __init__(self, filename: str, max_bytes: int = LOG_MAX_SIZE, backup_count: int = LOG_BACKUP_COUNT):
        super().__init__(filename, when="W0", backupCount=backup_count, encoding="utf-8")
        self.max_bytes = max_bytes
        self.namer = lambda name: f"{name}.gz"
        self.rotator = self._compress

    def shouldRollover(self, record) -> bool:
        if os.path.exists(self.baseFilename) and os.path.getsize(self.baseFilename) >= self.max_bytes:
            return True
        return bool(super().shouldRollover(record))

    @staticmethod
    def _compress(source: str, dest: str):
        with open(source, "rb") as f_in, gzip.open(dest, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        os.remove(source)


def setup_logger(log_file: str = LOG_FILE, level: str = LOG_LEVEL) -> logging.Logger:
    """
    Configure the ``faceguard`` logger tree: console output plus an optional
    rotating, compressed log file. Safe to call more than once.
    """
    logger = logging.getLogger("faceguard")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = CompressingRotatingHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def create_logging_middleware(app, logger: logging.Logger):
    """
    Adds a middleware to log request method, path, status and duration.
    Bodies are not logged: they carry face images.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            "IP=%s | %s %s | Status=%s | Time=%.4fs",
            client_ip, request.method, request.url.path, response.status_code, process_time
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
