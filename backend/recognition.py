"""
Local face recognition using InsightFace.
Alternative to the cloud recognizer for sites without internet access.
Supports GPU with CPU fallback.
"""
import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np
from insightface.app import FaceAnalysis

from errors import RecognizerFailure
from schemas import GalleryEntry, Match

logger = logging.getLogger("faceguard.recognizer")


class FaceRecognizer:
    """
    Wrapper around InsightFace that answers ``identify`` requests.
    Confidence is the cosine similarity between a probe face and the best
    matching gallery photo, clipped to [0, 1].
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        det_size: tuple = (640, 640),
        use_gpu: bool = True,
        app: Optional[FaceAnalysis] = None
    ):
        """
        Args:
            model_name: InsightFace model name (buffalo_l, buffalo_sc, etc.)
            det_size: Detection size for face detector
            use_gpu: Try to use GPU, fallback to CPU if unavailable
            app: Pre-built FaceAnalysis instance (skips model loading)
        """
        self.providers = self._select_providers(use_gpu)
        if app is None:
            logger.info("Loading InsightFace model %s with %s", model_name, self.providers)
            app = FaceAnalysis(name=model_name, providers=self.providers)
            app.prepare(ctx_id=0, det_size=det_size)
        self.app = app
        self._gallery_cache: Dict[str, np.ndarray] = {}

    @staticmethod
    def _select_providers(use_gpu: bool) -> List[str]:
        if not use_gpu:
            return ['CPUExecutionProvider']
        try:
            import onnxruntime as ort
            available = ort.get_available_providers()
        except ImportError as e:
            logger.warning("onnxruntime unavailable (%s), using CPU", e)
            return ['CPUExecutionProvider']

        if 'CUDAExecutionProvider' in available:
            return ['CUDAExecutionProvider', 'CPUExecutionProvider']
        if 'CoreMLExecutionProvider' in available:
            return ['CoreMLExecutionProvider', 'CPUExecutionProvider']
        logger.warning("GPU not available, using CPU")
        return ['CPUExecutionProvider']

    def detect_faces(self, image: np.ndarray, min_face_size: int = 30) -> List[Dict]:
        """
        Detect faces in a BGR image and extract embeddings.

        Returns:
            List of dicts with 'bbox' ([x, y, w, h]), 'embedding' and 'det_score'
        """
        results = []
        for face in self.app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int)
            w = x2 - x1
            h = y2 - y1
            if w < min_face_size or h < min_face_size:
                continue
            results.append({
                'bbox': [int(x1), int(y1), int(w), int(h)],
                'embedding': face.embedding,
                'det_score': float(face.det_score),
            })
        return results

    @staticmethod
    def compare_embeddings(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Cosine similarity of two embeddings."""
        emb1_norm = emb1 / np.linalg.norm(emb1)
        emb2_norm = emb2 / np.linalg.norm(emb2)
        return float(np.dot(emb1_norm, emb2_norm))

    @staticmethod
    def _decode(data: bytes) -> Optional[np.ndarray]:
        nparr = np.frombuffer(data, np.uint8)
        return cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    def _gallery_embedding(self, key: str, entry: GalleryEntry) -> Optional[np.ndarray]:
        """Embedding of the largest face in a gallery photo, cached by content hash."""
        if key in self._gallery_cache:
            return self._gallery_cache[key]

        img = self._decode(entry.image)
        if img is None:
            logger.debug("Gallery image for %s could not be decoded", entry.label)
            return None

        faces = self.detect_faces(img)
        if not faces:
            # not cached: the detector may find a face on a later call
            logger.debug("No face found in gallery image for %s", entry.label)
            return None

        largest = max(faces, key=lambda f: f['bbox'][2] * f['bbox'][3])
        self._gallery_cache[key] = largest['embedding']
        return largest['embedding']

    def identify_sync(self, probe: bytes, gallery: Sequence[GalleryEntry]) -> List[Match]:
        img = self._decode(probe)
        if img is None:
            raise RecognizerFailure("Probe frame could not be decoded")

        keyed = [(hashlib.sha1(entry.image).hexdigest(), entry) for entry in gallery]
        current = {key for key, _ in keyed}
        for key in list(self._gallery_cache):
            if key not in current:
                del self._gallery_cache[key]

        known = []
        for key, entry in keyed:
            embedding = self._gallery_embedding(key, entry)
            if embedding is not None:
                known.append((entry.label, embedding))

        matches = []
        for face in self.detect_faces(img):
            best_label = None
            best_score = -1.0
            for label, stored in known:
                score = self.compare_embeddings(face['embedding'], stored)
                if score > best_score:
                    best_score = score
                    best_label = label
            if best_label is not None:
                matches.append(Match(name=best_label, confidence=min(max(best_score, 0.0), 1.0)))
        return matches

    async def identify(self, probe: bytes, gallery: Sequence[GalleryEntry]) -> List[Match]:
        return await asyncio.to_thread(self.identify_sync, probe, gallery)

    def get_provider_info(self) -> Dict:
        """Get information about active execution providers."""
        return {
            "backend": "insightface",
            "providers": self.providers,
            "using_gpu": any(p in ['CUDAExecutionProvider', 'CoreMLExecutionProvider'] for p in self.providers)
        }
