"""
Gemini image generation client.

Sends one generateContent request per illustration and extracts the
inline image from the response. No retries: a failed call is final.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config.loader import DEFAULT_API_BASE, resolve_api_key
from ..core.errors import ExternalServiceError, MalformedResponseError
from ..core.pricing import DEFAULT_IMAGE_MODEL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedImage:
    """Decoded image returned by the generation service."""
    payload: bytes
    mime_type: str


def build_image_prompt(menu_title: str) -> str:
    """Craft the illustration prompt for a menu title.

    The raw title is used so the model keeps its context; names of people
    in it ("Sarah's Chili") are to be ignored.
    """
    return (
        f"A colorful, comic book style illustration of {menu_title}. "
        "Focus only on the food itself, ignore any person's names in the title. "
        "Vibrant colors, cartoon aesthetic, playful and fun, food-focused, "
        "no text, no watermarks, clean background, appetizing"
    )


class GeminiImageClient:
    """Client for the Gemini generateContent endpoint in image mode.

    The API key is resolved lazily, on the first ``generate`` call, so a
    missing credential fails the task that needs it rather than process
    start-up.
    """

    def __init__(
        self,
        model: str = DEFAULT_IMAGE_MODEL,
        aspect_ratio: str = "4:3",
        api_base: str = DEFAULT_API_BASE,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the client.

        Args:
            model: Image model name (required)
            aspect_ratio: Output aspect ratio requested from the model
            api_base: Base URL of the Generative Language API
            api_key: Explicit key; falls back to GEMINI_API_KEY
            timeout_seconds: HTTP timeout for the single attempt
            http_client: Pre-built AsyncClient, mainly for tests

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.aspect_ratio = aspect_ratio
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def build_request(self, prompt: str) -> Dict[str, Any]:
        """JSON body asking for a single image at the configured aspect ratio."""
        return {
            "contents": [{
                "parts": [{"text": prompt}]
            }],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": {
                    "aspectRatio": self.aspect_ratio
                }
            }
        }

    async def generate(self, prompt: str) -> GeneratedImage:
        """Generate one image for ``prompt``.

        Args:
            prompt: Full illustration prompt

        Returns:
            Decoded image bytes and their MIME type

        Raises:
            ConfigurationError: If no usable API key is configured
            ExternalServiceError: On a non-success status or transport failure
            MalformedResponseError: If the response carries no inline image
        """
        api_key = resolve_api_key(self.api_key)
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }
        body = self.build_request(prompt)

        logger.info("Generating image with %s", self.model)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.endpoint, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.endpoint, json=body, headers=headers)
        except httpx.RequestError as exc:
            logger.error("Gemini API request failed: %s", exc)
            raise ExternalServiceError(None, str(exc)) from exc

        if not response.is_success:
            logger.error("Gemini API error: %s %s", response.status_code, response.text)
            raise ExternalServiceError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Gemini response is not valid JSON") from exc

        image = extract_inline_image(data)
        logger.info("Image generated, type: %s", image.mime_type)
        return image


def extract_inline_image(data: Any) -> GeneratedImage:
    """Pull the first inline image part out of a generateContent response.

    Raises:
        MalformedResponseError: If no decodable image part is present
    """
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not candidates or not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        raise MalformedResponseError("No image generated by Gemini API")

    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        parts = []
    for part in parts:
        inline = part.get("inlineData") if isinstance(part, dict) else None
        if not isinstance(inline, dict):
            continue
        mime_type = inline.get("mimeType") or ""
        if isinstance(mime_type, str) and mime_type.startswith("image/") and inline.get("data"):
            try:
                payload = base64.b64decode(inline["data"], validate=True)
            except (binascii.Error, ValueError) as exc:
                raise MalformedResponseError("Inline image data is not valid base64") from exc
            return GeneratedImage(payload=payload, mime_type=mime_type)

    logger.error("No image part found in %d response part(s)", len(parts))
    raise MalformedResponseError("No image data found in Gemini response")
