"""
Generative Transform

Turns the subject cutout into a styled product shot. The model is a black
box behind ``GenerativeProvider``; this module owns the prompt profiles,
the model routing (primary + fallback) and the mapping of provider
failures onto the error taxonomy:

- content moderation rejections -> ContentPolicyViolationError
- malformed requests (400/422)   -> InvalidInputError
- bad credentials (401/403)      -> UnauthorizedError / ForbiddenError
- timeouts, 429, 5xx, open breaker -> ProviderTransientError
"""

import asyncio
import base64
import binascii
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import httpx
from PIL import Image, ImageDraw

from pixelqueue.core.exceptions import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    ContentPolicyViolationError,
    ForbiddenError,
    InvalidInputError,
    PixelQueueError,
    ProviderTransientError,
    UnauthorizedError,
)
from pixelqueue.core.logging import get_logger
from pixelqueue.core.metrics import record_provider_call
from pixelqueue.pipeline.stages import open_image, to_png_bytes

logger = get_logger(__name__)


# =============================================================================
# Prompt Profiles
# =============================================================================

@dataclass(frozen=True)
class PromptProfile:
    style: str
    name: str
    prompt: str
    negative_prompt: str
    params: Dict[str, Any] = field(default_factory=dict)


DEFAULT_PROMPTS: Dict[str, PromptProfile] = {
    "studio_white": PromptProfile(
        style="studio_white",
        name="Studio White",
        prompt="Professional product photography on pure white background, soft studio lighting, "
               "high-end commercial quality, clean and minimal, fashion e-commerce style",
        negative_prompt="shadows, colored background, busy background, low quality, blurry, watermark, text",
        params={"guidance_scale": 7.5, "num_inference_steps": 30},
    ),
    "studio_gray": PromptProfile(
        style="studio_gray",
        name="Studio Gray",
        prompt="Professional product photography on neutral gray background, soft diffused lighting, "
               "elegant commercial style, fashion catalog quality",
        negative_prompt="harsh shadows, colored background, busy background, low quality, watermark",
        params={"guidance_scale": 7.5, "num_inference_steps": 30},
    ),
    "gradient_soft": PromptProfile(
        style="gradient_soft",
        name="Soft Gradient",
        prompt="Product photography with soft gradient background, professional lighting, modern aesthetic, "
               "clean fashion presentation",
        negative_prompt="harsh colors, busy background, low quality, watermark",
        params={"guidance_scale": 7.0, "num_inference_steps": 25},
    ),
    "studio_clean_white": PromptProfile(
        style="studio_clean_white",
        name="Studio Clean White",
        prompt="Ultra clean white background product photography, perfect studio lighting, high-end fashion "
               "e-commerce, crisp details, professional catalog style, no shadows on background",
        negative_prompt="shadows on background, gray tones, colored background, busy background, low quality, "
                        "blurry, watermark, text, artifacts",
        params={"guidance_scale": 8.0, "num_inference_steps": 35},
    ),
    "luxury_marble_velvet": PromptProfile(
        style="luxury_marble_velvet",
        name="Marble & Velvet",
        prompt="Luxury product photography on elegant marble surface with velvet fabric accents, sophisticated "
               "studio lighting, high-end boutique aesthetic, premium fashion presentation, rich textures",
        negative_prompt="cheap looking, plastic, low quality, blurry, watermark, text, busy background, cluttered",
        params={"guidance_scale": 7.5, "num_inference_steps": 35},
    ),
    "boutique_clean_store": PromptProfile(
        style="boutique_clean_store",
        name="Clean Boutique",
        prompt="Clean boutique store setting, minimalist retail display, soft natural lighting, modern fashion "
               "store aesthetic, light neutral background, professional retail photography",
        negative_prompt="cluttered, messy, dark, low quality, blurry, watermark, text, busy background, people",
        params={"guidance_scale": 7.0, "num_inference_steps": 30},
    ),
}

CATEGORY_CONTEXTS = {
    "clothing": "fashion clothing item, apparel",
    "beauty": "beauty product, cosmetics",
    "accessories": "fashion accessory",
    "shoes": "footwear, shoes",
    "jewelry": "jewelry, fine accessories",
    "bags": "handbag, fashion bag",
    "other": "product",
}


def get_prompt_profile(style: str) -> PromptProfile:
    """Profile for a background style; unknown styles fall back to studio_white."""
    return DEFAULT_PROMPTS.get(style, DEFAULT_PROMPTS["studio_white"])


def build_full_prompt(base_prompt: str, category: str, additional_context: Optional[str] = None) -> str:
    prompt = f"{CATEGORY_CONTEXTS.get(category, CATEGORY_CONTEXTS['other'])}, {base_prompt}"
    if additional_context:
        prompt = f"{prompt}, {additional_context}"
    return prompt


def profile_for_job(category: str, background_style: str) -> PromptProfile:
    """Resolve the style profile and prefix its prompt with the category context."""
    profile = get_prompt_profile(background_style)
    return replace(profile, prompt=build_full_prompt(profile.prompt, category))


# =============================================================================
# Provider Contract
# =============================================================================

@dataclass(frozen=True)
class ModelRouting:
    model: str
    fallback_model: Optional[str] = None
    timeout_ms: int = 30000
    provider: str = "openrouter"


@dataclass(frozen=True)
class GenerationResult:
    image: bytes
    model_used: str
    provider_used: str
    duration_ms: int
    used_fallback: bool = False


class GenerativeProvider(ABC):
    """Interface for the generative model."""

    @abstractmethod
    async def transform(self, cutout: bytes, profile: PromptProfile, timeout_ms: int) -> GenerationResult:
        """
        Produce the styled image for a cutout.

        Raises:
            ContentPolicyViolationError, InvalidInputError: permanent rejections
            ProviderTransientError: worth retrying
        """
        pass


# =============================================================================
# OpenRouter
# =============================================================================

_POLICY_MARKERS = ("content_policy", "content policy", "moderation", "safety", "nsfw", "flagged")


def _looks_like_policy_rejection(body: str) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in _POLICY_MARKERS)


def _decode_data_url(url: str) -> bytes:
    if not url.startswith("data:image"):
        raise ProviderTransientError("Provider returned a non-inline image URL")
    try:
        return base64.b64decode(url.split(",", 1)[1], validate=True)
    except (IndexError, binascii.Error) as e:
        raise ProviderTransientError(f"Malformed image data URL: {e}")


class OpenRouterProvider(GenerativeProvider):
    """
    Image generation through OpenRouter's chat completions endpoint.

    The primary model is tried first; on a transient failure the fallback
    model (if configured) gets one try within the same attempt. Permanent
    rejections are never retried on the fallback.
    """

    def __init__(
        self,
        api_key: str,
        routing: ModelRouting,
        base_url: str = "https://openrouter.ai/api/v1",
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        if not api_key:
            raise UnauthorizedError("Missing OpenRouter API key")
        self._api_key = api_key
        self.routing = routing
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._circuit = circuit_breaker or CircuitBreaker("generation")

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _build_body(self, model: str, cutout: bytes, profile: PromptProfile) -> Dict[str, Any]:
        image_b64 = base64.b64encode(cutout).decode("ascii")
        return {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": f"{profile.prompt}. Avoid: {profile.negative_prompt}"},
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_b64}"}},
                    ],
                }
            ],
            "modalities": ["image", "text"],
        }

    def _raise_for_status(self, response: httpx.Response):
        status = response.status_code
        if status < 400:
            return
        body = response.text[:500]
        if status == 451 or (status in (400, 403, 422) and _looks_like_policy_rejection(body)):
            raise ContentPolicyViolationError(f"Provider rejected content: {body}", details={"http_status": status})
        if status in (400, 422):
            raise InvalidInputError(f"Provider rejected request ({status}): {body}", details={"http_status": status})
        if status == 401:
            raise UnauthorizedError("Provider rejected credentials", details={"http_status": status})
        if status == 403:
            raise ForbiddenError(f"Provider refused request: {body}", details={"http_status": status})
        raise ProviderTransientError(f"Provider error ({status}): {body}", http_status=status)

    def _extract_image(self, data: Dict[str, Any]) -> bytes:
        choices = data.get("choices") or []
        if not choices:
            raise ProviderTransientError("Provider returned no choices")
        choice = choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise ContentPolicyViolationError("Provider filtered the generated content")
        images = (choice.get("message") or {}).get("images") or []
        if not images:
            raise ProviderTransientError("Provider response contained no image")
        url = (images[0].get("image_url") or {}).get("url", "")
        return _decode_data_url(url)

    async def _call(self, model: str, cutout: bytes, profile: PromptProfile, timeout_ms: int) -> bytes:
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=self._build_body(model, cutout, profile),
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "X-Title": "PixelQueue Worker",
                },
                timeout=timeout_ms / 1000.0,
            )
        except httpx.TimeoutException:
            raise ProviderTransientError(f"Provider timed out after {timeout_ms}ms")
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Provider connection failed: {e}")

        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError:
            raise ProviderTransientError("Provider returned invalid JSON")
        return self._extract_image(data)

    async def _call_tracked(self, model: str, cutout: bytes, profile: PromptProfile, timeout_ms: int) -> bytes:
        try:
            image = await self._call(model, cutout, profile, timeout_ms)
        except ProviderTransientError as e:
            self._circuit.record_failure(e)
            record_provider_call(model, "transient_error")
            raise
        except PixelQueueError:
            # The provider answered, so the circuit sees a healthy upstream
            self._circuit.record_success()
            record_provider_call(model, "rejected")
            raise
        except Exception as e:
            self._circuit.record_failure(e)
            record_provider_call(model, "error")
            raise
        self._circuit.record_success()
        record_provider_call(model, "success")
        return image

    def _admit(self) -> bool:
        """Claim a call slot. Returns True when the call is the half-open trial."""
        trial = self._circuit.state is CircuitState.HALF_OPEN
        if not self._circuit.can_execute():
            raise CircuitBreakerOpenError(self._circuit.name)
        return trial

    async def transform(self, cutout, profile, timeout_ms=None):
        trial = self._admit()
        timeout_ms = timeout_ms or self.routing.timeout_ms
        start = time.perf_counter()
        try:
            try:
                image = await self._call_tracked(self.routing.model, cutout, profile, timeout_ms)
                used_fallback = False
                model = self.routing.model
            except ProviderTransientError as e:
                if not self.routing.fallback_model:
                    raise
                # A failed primary may have opened the circuit
                trial = self._admit() or trial
                logger.warning(
                    "generation_primary_failed",
                    model=self.routing.model,
                    fallback_model=self.routing.fallback_model,
                    error=str(e)
                )
                image = await self._call_tracked(self.routing.fallback_model, cutout, profile, timeout_ms)
                used_fallback = True
                model = self.routing.fallback_model
        finally:
            if trial:
                # Cancelled or otherwise unreported calls must not hold the trial
                self._circuit.release_trial()

        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info("generation_completed", model=model, used_fallback=used_fallback, duration_ms=duration_ms)
        return GenerationResult(
            image=image,
            model_used=model,
            provider_used=self.routing.provider,
            duration_ms=duration_ms,
            used_fallback=used_fallback,
        )


# =============================================================================
# Simulated provider for development
# =============================================================================

STYLE_BACKDROPS = {
    "studio_white": ((255, 255, 255), (236, 236, 236)),
    "studio_gray": ((200, 200, 204), (150, 150, 156)),
    "gradient_soft": ((250, 232, 240), (214, 226, 250)),
    "studio_clean_white": ((255, 255, 255), (248, 248, 248)),
    "luxury_marble_velvet": ((238, 234, 228), (96, 28, 48)),
    "boutique_clean_store": ((244, 240, 232), (210, 200, 186)),
}


def _vertical_gradient(size, top, bottom) -> Image.Image:
    width, height = size
    backdrop = Image.new("RGB", size, top)
    draw = ImageDraw.Draw(backdrop)
    for y in range(height):
        t = y / max(height - 1, 1)
        color = tuple(int(top[i] + (bottom[i] - top[i]) * t) for i in range(3))
        draw.line([(0, y), (width, y)], fill=color)
    return backdrop


class SimulatedProvider(GenerativeProvider):
    """Composites the cutout over a style-colored gradient. No network."""

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s

    def _render(self, cutout: bytes, style: str) -> bytes:
        subject = open_image(cutout).convert("RGBA")
        top, bottom = STYLE_BACKDROPS.get(style, STYLE_BACKDROPS["studio_white"])
        backdrop = _vertical_gradient(subject.size, top, bottom).convert("RGBA")
        return to_png_bytes(Image.alpha_composite(backdrop, subject).convert("RGB"))

    async def transform(self, cutout, profile, timeout_ms=None):
        start = time.perf_counter()
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        image = await asyncio.to_thread(self._render, cutout, profile.style)
        record_provider_call("simulated", "success")
        return GenerationResult(
            image=image,
            model_used="simulated",
            provider_used="simulated",
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
