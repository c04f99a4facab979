"""
Thin wrappers around the hosted generative-AI REST API and the media host.

Every call is a single request/response relay. Validation calls are raced
against AI_VALIDATION_TIMEOUT and fail open to manual review: listings and
IDs still go through admin approval, so a slow model never blocks a user.
"""
import base64
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, TypeVar, List, Dict, Any, Optional

import requests
from pydantic import BaseModel, Field

from config import (
    GEMINI_API_KEY, GEMINI_API_BASE, GEMINI_PRIMARY_MODEL, GEMINI_FALLBACK_MODEL,
    GEMINI_IMAGE_MODEL, GEMINI_VIDEO_MODEL, AI_REQUEST_TIMEOUT, AI_VALIDATION_TIMEOUT,
    API_KEY_LOOKUP_TIMEOUT, VIDEO_POLL_INTERVAL, CLOUDINARY_CLOUD_NAME, CLOUDINARY_UPLOAD_PRESET,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_race_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="race")


def race_with_timeout(fn: Callable[[], T], timeout: float, default: T) -> T:
    """Return fn() if it finishes within timeout seconds, otherwise default. Errors from fn propagate."""
    future = _race_pool.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning("Operation exceeded %.1fs, using fallback result", timeout)
        return default


class AIServiceError(Exception):
    pass


class GroundingSource(BaseModel):
    title: str
    uri: str


class AdviceReply(BaseModel):
    text: str
    sources: List[GroundingSource] = Field(default_factory=list)


class ValidationVerdict(BaseModel):
    valid: bool
    reason: Optional[str] = None


MANUAL_REVIEW = ValidationVerdict(valid=True, reason="Manual Review Required (AI Offline)")

BASE_INSTRUCTION = (
    'Context: You are an AI assistant for "Dual Power Women Hub" in Kenya. '
    "Support all Kenyan languages and mirror the user's language. Formatting: Plain text only."
)
NURSE_INSTRUCTION = (
    f"{BASE_INSTRUCTION} Role: Virtual Private Nurse. Task: Provide professional medical triage advice. "
    "Tone: Empathetic, calm, serious."
)
FRIEND_INSTRUCTION = (
    f"{BASE_INSTRUCTION} Role: Women's Wellness Assistant. Task: Answer general health/lifestyle questions. "
    "Tone: Friendly, sisterly."
)


def _strip_data_url(image: str) -> str:
    return image.split(",", 1)[1] if image.startswith("data:") and "," in image else image


def _inline_image(image: str, mime_type: str = "image/jpeg") -> Dict[str, Any]:
    return {"inlineData": {"mimeType": mime_type, "data": _strip_data_url(image)}}


class GeminiClient:
    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        base_url: str = GEMINI_API_BASE,
        session: Optional[requests.Session] = None,
        timeout: float = AI_REQUEST_TIMEOUT,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    # ------------------ Transport ------------------
    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise AIServiceError("GEMINI_API_KEY not set")
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        try:
            resp = self.session.post(f"{self.base_url}/{path}", json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise AIServiceError(str(e)) from e
        if resp.status_code != 200:
            raise AIServiceError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        return self._json(resp)

    @staticmethod
    def _json(resp) -> Dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError as e:
            raise AIServiceError(f"Unreadable response body: {(resp.text or '')[:200]}") from e
        if not isinstance(payload, dict):
            raise AIServiceError("Unexpected response shape")
        return payload

    def generate(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._post(f"models/{model}:generateContent", body)

    @staticmethod
    def response_text(resp: Dict[str, Any]) -> str:
        parts = ((resp.get("candidates") or [{}])[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)

    @staticmethod
    def grounding_chunks(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
        meta = (resp.get("candidates") or [{}])[0].get("groundingMetadata") or {}
        return meta.get("groundingChunks") or []

    # ------------------ Health chat ------------------
    def health_advice(self, history: List[Dict[str, str]], message: str, escalated: bool) -> AdviceReply:
        """Primary model first, then the fallback model. Raises AIServiceError when both fail."""
        contents = [
            {"role": "model" if h.get("role") in ("model", "nurse") else "user", "parts": [{"text": h["text"]}]}
            for h in history
            if isinstance(h.get("text"), str) and h["text"].strip()
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        body: Dict[str, Any] = {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": NURSE_INSTRUCTION if escalated else FRIEND_INSTRUCTION}]},
        }
        if not escalated:
            body["tools"] = [{"google_search": {}}]

        last_error: Optional[Exception] = None
        for model in (GEMINI_PRIMARY_MODEL, GEMINI_FALLBACK_MODEL):
            try:
                resp = self.generate(model, body)
            except AIServiceError as e:
                logger.warning("Health advice via %s failed: %s", model, e)
                last_error = e
                continue
            text = self.response_text(resp) or "I apologize, I could not process that request."
            sources = []
            if not escalated:
                for chunk in self.grounding_chunks(resp):
                    web = chunk.get("web") or {}
                    if web.get("uri") and web.get("title"):
                        sources.append(GroundingSource(title=web["title"], uri=web["uri"]))
            return AdviceReply(text=text, sources=sources)
        raise AIServiceError("All health advice models failed") from last_error

    # ------------------ Marketplace ------------------
    def analyze_asset(self, image: str) -> Dict[str, Any]:
        body = {
            "contents": [{"parts": [
                _inline_image(image),
                {"text": "Analyze this item for a Kenyan rental marketplace. Return JSON "
                         "{ title, description, estimated_rate (int), category, condition }."},
            ]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        try:
            return json.loads(self.response_text(self.generate(GEMINI_PRIMARY_MODEL, body)) or "{}")
        except (AIServiceError, ValueError) as e:
            logger.warning("Asset analysis failed: %s", e)
            return {}

    def _verdict(self, parts: List[Dict[str, Any]]) -> ValidationVerdict:
        body = {"contents": [{"parts": parts}], "generationConfig": {"responseMimeType": "application/json"}}
        text = self.response_text(self.generate(GEMINI_PRIMARY_MODEL, body))
        return ValidationVerdict.model_validate_json(text or '{"valid": false, "reason": "AI Error"}')

    def _validate(self, parts: List[Dict[str, Any]], what: str) -> ValidationVerdict:
        def call() -> ValidationVerdict:
            try:
                return self._verdict(parts)
            except (AIServiceError, ValueError) as e:
                logger.warning("%s validation failed, falling back to manual review: %s", what, e)
                return MANUAL_REVIEW
        return race_with_timeout(call, AI_VALIDATION_TIMEOUT, MANUAL_REVIEW)

    def validate_asset_images(self, images: List[str], title: str) -> ValidationVerdict:
        parts = [_inline_image(img) for img in images[:5]]
        parts.append({"text": (
            f'SECURITY AUDIT: Verify if these images consistently represent a "{title}". '
            "Reject unrelated, low quality or mismatching images. "
            'Return JSON: { "valid": boolean, "reason": "string" }'
        )})
        return self._validate(parts, "Asset image")

    def validate_id_document(self, front_image: str, back_image: str) -> ValidationVerdict:
        parts = [
            _inline_image(front_image),
            _inline_image(back_image),
            {"text": (
                "SECURITY AUDIT: Verify Kenyan National ID. Image 1 must be FRONT. Image 2 must be BACK. "
                "Reject random objects, selfies or identical images. "
                'Return JSON: { "valid": boolean, "reason": "string" }'
            )},
        ]
        return self._validate(parts, "ID document")

    def edit_image(self, image: str, instruction: str) -> Optional[str]:
        body = {"contents": [{"parts": [_inline_image(image, "image/png"), {"text": instruction}]}]}
        try:
            resp = self.generate(GEMINI_IMAGE_MODEL, body)
        except AIServiceError as e:
            logger.warning("Image edit failed: %s", e)
            return None
        parts = ((resp.get("candidates") or [{}])[0].get("content") or {}).get("parts") or []
        for part in parts:
            data = (part.get("inlineData") or {}).get("data")
            if data:
                return data
        return None

    def find_local_suppliers(self, query: str, lat: float, lng: float) -> Dict[str, Any]:
        body = {
            "contents": [{"parts": [{"text": f"Find locations for: {query}"}]}],
            "tools": [{"googleMaps": {}}],
            "toolConfig": {"retrievalConfig": {"latLng": {"latitude": lat, "longitude": lng}}},
        }
        try:
            resp = self.generate(GEMINI_FALLBACK_MODEL, body)
        except AIServiceError as e:
            logger.warning("Supplier lookup failed: %s", e)
            return {"text": "Could not fetch location data.", "chunks": []}
        return {"text": self.response_text(resp) or "No results found.", "chunks": self.grounding_chunks(resp)}

    def generate_video(self, prompt: str, image: Optional[str] = None, max_polls: int = 120) -> Optional[str]:
        instance: Dict[str, Any] = {"prompt": prompt}
        if image:
            instance["image"] = {"bytesBase64Encoded": _strip_data_url(image), "mimeType": "image/png"}
        body = {"instances": [instance], "parameters": {"aspectRatio": "16:9", "resolution": "720p"}}
        try:
            operation = self._post(f"models/{GEMINI_VIDEO_MODEL}:predictLongRunning", body)
            for _ in range(max_polls):
                if operation.get("done"):
                    break
                time.sleep(VIDEO_POLL_INTERVAL)
                operation = self._get(operation["name"])
        except (AIServiceError, KeyError) as e:
            logger.warning("Video generation failed: %s", e)
            return None
        if operation.get("error") or not operation.get("done"):
            return None
        samples = ((operation.get("response") or {}).get("generateVideoResponse") or {}).get("generatedSamples") or []
        return ((samples[0].get("video") or {}).get("uri")) if samples else None

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            resp = self.session.get(
                f"{self.base_url}/{path}", headers={"x-goog-api-key": self.api_key}, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise AIServiceError(str(e)) from e
        if resp.status_code != 200:
            raise AIServiceError(f"HTTP {resp.status_code}")
        return self._json(resp)


def resolve_api_key(store) -> str:
    """Settings override key if it can be read within API_KEY_LOOKUP_TIMEOUT, else the configured key."""
    if store is None:
        return GEMINI_API_KEY
    override = race_with_timeout(lambda: store.fetch_document().settings.gemini_api_key, API_KEY_LOOKUP_TIMEOUT, None)
    return override or GEMINI_API_KEY


def upload_media(data: bytes, filename: str, content_type: str = "application/octet-stream",
                 session: Optional[requests.Session] = None) -> str:
    """Upload to Cloudinary and return the durable URL; a base64 data URL when the host is unreachable."""
    fallback = f"data:{content_type};base64,{base64.b64encode(data).decode()}"
    if not CLOUDINARY_CLOUD_NAME:
        return fallback
    http = session or requests
    try:
        resp = http.post(
            f"https://api.cloudinary.com/v1_1/{CLOUDINARY_CLOUD_NAME}/auto/upload",
            files={"file": (filename, data, content_type)},
            data={"upload_preset": CLOUDINARY_UPLOAD_PRESET},
            timeout=AI_REQUEST_TIMEOUT,
        )
        payload = resp.json()
        if payload.get("error"):
            raise ValueError(payload["error"].get("message"))
        return payload["secure_url"]
    except (requests.RequestException, ValueError, KeyError) as e:
        logger.error("Media upload failed, storing inline: %s", e)
        return fallback
