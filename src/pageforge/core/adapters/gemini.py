"""Gemini backend and prompt enhancer over the Generative Language REST API.

Both classes talk to ``{base_url}/models/{model}:generateContent`` with an
``httpx.AsyncClient``.  The client can be injected (tests pass one built on
``httpx.MockTransport``); otherwise the backend owns one and closes it in
:meth:`GeminiBackend.aclose`.

Failure Classification
----------------------
- HTTP 429 and 5xx, timeouts and connection errors are *retryable*
- Any other non-2xx status, or a response without image data, is a plain
  failure
- Cancellation is checked before and after every HTTP call
"""

from __future__ import annotations

import base64
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from pageforge.core.backend import (
    BackendResult,
    EnhanceResult,
    GenerationBackend,
    PromptEnhancer,
    backend_registry,
)
from pageforge.core.prompts import (
    AUDIENCES,
    COMPLEXITIES,
    STYLE_REFERENCE_INSTRUCTION,
    STYLES,
    api_aspect_ratio,
    build_prompt,
    scrub_color_words,
)

if TYPE_CHECKING:
    from pageforge.core.cancellation import CancellationToken
    from pageforge.core.config import PageforgeConfig
    from pageforge.core.models import ReferenceImage

logger = logging.getLogger(__name__)

# Errors worth retrying
_RETRYABLE_ERRORS = (httpx.TimeoutException, httpx.TransportError)

_STATUS_MESSAGES = {
    400: "Bad Request (400): the model refused the prompt or parameters",
    403: "Access Denied (403): check the API key and billing status",
    429: "Quota Exceeded (429): generating too fast",
    503: "Service Unavailable (503): Gemini is temporarily down",
}

_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_HARASSMENT",
    )
]

ENHANCER_SYSTEM_PROMPT = """\
You are an expert coloring book prompt engineer.
Rewrite the user's idea into a vivid scene description for a line-art page.

Rules:
1. Keep the output under 100 words.
2. Focus on visual elements: shapes, objects, composition.
3. Give multiple characters of the same kind distinct visual traits.
4. Only add objects that belong in the setting.
5. Do not mention colors, shading, textures or technical instructions.
6. Preserve the user's subject, action and tone. Add detail, never remove it.

Output only the enhanced scene description."""


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _status_error(response: httpx.Response) -> str:
    message = _STATUS_MESSAGES.get(response.status_code)
    if message:
        return message
    try:
        payload = response.json()
    except ValueError:
        payload = None
    error = payload.get("error") if isinstance(payload, dict) else None
    detail = error.get("message") if isinstance(error, dict) else None
    return f"HTTP {response.status_code}: {detail or response.reason_phrase}"


def _extract_image(payload: Any) -> tuple[bytes, str] | None:
    if not isinstance(payload, dict):
        return None
    for candidate in payload.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return base64.b64decode(inline["data"]), mime_type
    return None


def _extract_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    texts = []
    for candidate in payload.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                texts.append(part["text"])
    return "".join(texts).strip()


class _GeminiTransport:
    """Shared HTTP plumbing for the backend and the enhancer."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str,
        timeout_s: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def generate_content(self, model: str, body: dict[str, Any]) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/models/{model}:generateContent",
            json=body,
            headers={"x-goog-api-key": self.api_key or ""},
        )

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class GeminiBackend(GenerationBackend):
    """Gemini image generation backend.

    Args:
        config: Application configuration (API key, models, endpoint, timeout)
        client: Optional pre-built HTTP client
    """

    name = "gemini"
    description = "Gemini image model over the Generative Language REST API"

    def __init__(self, config: PageforgeConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.model = config.gemini_image_model
        self._transport = _GeminiTransport(
            api_key=config.gemini_api_key,
            base_url=config.gemini_base_url,
            timeout_s=config.request_timeout_s,
            client=client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.config.gemini_api_key)

    def create_enhancer(self) -> PromptEnhancer:
        return GeminiEnhancer(self.config, transport=self._transport)

    async def aclose(self) -> None:
        await self._transport.aclose()

    def build_request_body(
        self,
        prompt: str,
        aspect_ratio: str,
        resolution: str,
        reference_images: tuple[ReferenceImage, ...],
    ) -> dict[str, Any]:
        """Assemble the ``generateContent`` body.

        Reference images come first so the model sees them before the text.
        """
        parts: list[dict[str, Any]] = [
            {
                "inlineData": {
                    "mimeType": ref.mime_type,
                    "data": base64.b64encode(ref.data).decode("ascii"),
                }
            }
            for ref in reference_images
        ]
        text = f"{prompt}\n\n{STYLE_REFERENCE_INSTRUCTION}" if reference_images else prompt
        parts.append({"text": text})

        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": 1.0,
                "responseModalities": ["IMAGE", "TEXT"],
                "imageConfig": {
                    "aspectRatio": api_aspect_ratio(aspect_ratio),
                    "imageSize": resolution,
                },
            },
            "safetySettings": _SAFETY_SETTINGS,
        }

    async def generate(
        self,
        prompt: str,
        *,
        style: str,
        complexity: str,
        audience: str,
        aspect_ratio: str,
        resolution: str,
        reference_images: tuple[ReferenceImage, ...] = (),
        requires_text: bool = False,
        hero_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BackendResult:
        start = time.perf_counter()
        full_prompt, clamped = build_prompt(
            prompt,
            style,
            complexity,
            audience,
            aspect_ratio,
            requires_text=requires_text,
            hero_name=hero_name,
        )
        if clamped != complexity:
            logger.debug(f"Complexity {complexity!r} clamped to {clamped!r} for {audience}")

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        if not self.is_configured:
            return BackendResult.failure("Gemini API key is not configured", prompt_used=full_prompt)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        body = self.build_request_body(full_prompt, aspect_ratio, resolution, reference_images)
        try:
            response = await self._transport.generate_content(self.model, body)
        except _RETRYABLE_ERRORS as e:
            logger.warning(f"Gemini request failed: {e}")
            return BackendResult.failure(
                f"Network error: {e}", retryable=True, prompt_used=full_prompt, duration_ms=elapsed()
            )

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if response.status_code >= 400:
            return BackendResult.failure(
                _status_error(response),
                retryable=_is_retryable_status(response.status_code),
                prompt_used=full_prompt,
                duration_ms=elapsed(),
            )

        try:
            image = _extract_image(response.json())
        except ValueError as e:
            return BackendResult.failure(
                f"Malformed response: {e}", prompt_used=full_prompt, duration_ms=elapsed()
            )

        if image is None:
            return BackendResult.failure(
                "No image generated in response", prompt_used=full_prompt, duration_ms=elapsed()
            )

        data, mime_type = image
        return BackendResult(
            success=True,
            data=data,
            mime_type=mime_type,
            duration_ms=elapsed(),
            prompt_used=full_prompt,
        )


class GeminiEnhancer(PromptEnhancer):
    """Prompt enhancer backed by a Gemini text model."""

    name = "gemini"

    def __init__(self, config: PageforgeConfig, transport: _GeminiTransport | None = None):
        self.config = config
        self.model = config.gemini_text_model
        self._transport = transport or _GeminiTransport(
            api_key=config.gemini_api_key,
            base_url=config.gemini_base_url,
            timeout_s=config.request_timeout_s,
        )

    async def enhance(
        self,
        prompt: str,
        *,
        style: str,
        complexity: str,
        audience: str,
        hints: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> EnhanceResult:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        style_spec = STYLES.get(style)
        complexity_spec = COMPLEXITIES.get(complexity)
        audience_spec = AUDIENCES.get(audience)
        lines = [
            f"Style: {style_spec.keyword if style_spec else style}",
            f"Complexity: {complexity_spec.detail_level if complexity_spec else complexity}",
            f"Audience: {audience_spec.content_guidance if audience_spec else audience}",
        ]
        for key, value in (hints or {}).items():
            lines.append(f"{key}: {value}")
        lines.extend(["", f"User's idea: {prompt}", "", "Enhance this into a detailed scene description:"])

        body = {
            "systemInstruction": {"parts": [{"text": ENHANCER_SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": "\n".join(lines)}]}],
            "generationConfig": {"temperature": 0.8, "maxOutputTokens": 200},
        }

        try:
            response = await self._transport.generate_content(self.model, body)
        except _RETRYABLE_ERRORS as e:
            return EnhanceResult(success=False, error=f"Network error: {e}")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if response.status_code >= 400:
            return EnhanceResult(success=False, error=_status_error(response))

        try:
            text = _extract_text(response.json())
        except ValueError as e:
            return EnhanceResult(success=False, error=f"Malformed response: {e}")

        enhanced = scrub_color_words(text)
        if not enhanced:
            return EnhanceResult(success=False, error="Enhancer returned no text")
        return EnhanceResult(success=True, enhanced_prompt=enhanced)


# Register the backend with the global backend registry
backend_registry.register(GeminiBackend)
