"""
Cloud face matching through the Gemini generateContent REST API.
The model receives the probe frame and the labelled gallery and answers with
a JSON list of matches.
"""
import base64
import json
import logging
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from config import GEMINI_MODEL, RECOGNIZER_TIMEOUT_SECONDS
from errors import RecognizerFailure
from imaging import image_mime_type
from schemas import GalleryEntry, Match, RecognitionResponse

logger = logging.getLogger("faceguard.recognizer")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

SYSTEM_INSTRUCTION = (
    "You are a professional face recognition system. Your task is to identify if the "
    "person in the 'Current Frame' matches any person in the 'Reference Gallery'. "
    "Analyze facial features meticulously. Return a list of matches with the exact "
    "name and a confidence score between 0 and 1."
)

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "matches": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                },
                "required": ["name", "confidence"],
            },
        }
    },
    "required": ["matches"],
}


def _inline_image(data: bytes) -> Dict:
    return {
        "inlineData": {
            "mimeType": image_mime_type(data),
            "data": base64.b64encode(data).decode("utf-8"),
        }
    }


def build_request(probe: bytes, gallery: Sequence[GalleryEntry]) -> Dict:
    """Assemble the generateContent body: probe first, then one labelled image per entry."""
    parts = [
        {"text": "Current Frame to check:"},
        _inline_image(probe),
        {"text": "Reference Gallery of enrolled users:"},
    ]
    for entry in gallery:
        parts.append({"text": f"User: {entry.label}"})
        parts.append(_inline_image(entry.image))

    return {
        "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {
            "responseMimeType": "application/json",
            "responseSchema": RESPONSE_SCHEMA,
            "temperature": 0.1,
        },
    }


def parse_response(body: Dict) -> List[Match]:
    """
    Extract matches from a generateContent response body.

    An empty model answer means no matches. Anything that is not the expected
    shape raises RecognizerFailure.
    """
    try:
        parts = body["candidates"][0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts)
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise RecognizerFailure(f"Unexpected response shape: {e!r}") from e

    if not text.strip():
        return []

    try:
        return RecognitionResponse.model_validate_json(text).matches
    except ValidationError as e:
        raise RecognizerFailure(f"Malformed match list: {e.error_count()} error(s)") from e


class GeminiRecognizer:
    """Recognizer backed by a hosted multimodal model."""

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = RECOGNIZER_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def identify(self, probe: bytes, gallery: Sequence[GalleryEntry]) -> List[Match]:
        payload = build_request(probe, gallery)
        try:
            response = await self.client.post(
                self.endpoint,
                json=payload,
                headers={"x-goog-api-key": self.api_key}
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise RecognizerFailure(
                f"Recognizer returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise RecognizerFailure(f"Recognizer request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise RecognizerFailure("Recognizer response was not JSON") from e

        matches = parse_response(body)
        logger.debug("Recognizer returned %d match(es) for %d gallery entries",
                     len(matches), len(gallery))
        return matches

    def get_provider_info(self) -> Dict:
        return {"backend": "gemini", "model": self.model}

    async def aclose(self):
        await self.client.aclose()
