"""Vendor engines: one class per AI vendor, all with the same two calls.

    generate_text(model, prompt, image_data_url=None) -> TextResult
    edit_image(model, prompt, image_bytes, mime)      -> ImageResult

OpenAI and Anthropic go through their official SDKs; Gemini is plain REST
via requests. Any non-success response becomes a VendorError whose message
embeds the vendor's raw error body.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import requests
from anthropic import Anthropic
from anthropic import APIError as AnthropicAPIError
from anthropic import APIStatusError as AnthropicStatusError
from openai import OpenAI
from openai import APIError as OpenAIAPIError
from openai import APIStatusError as OpenAIStatusError

from costs import TokenUsage

log = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TIMEOUT = 120
ANTHROPIC_MAX_TOKENS = 1024

IMAGE_SIZE = "1024x1024"
ASPECT_RATIO = "1:1"

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


class VendorError(RuntimeError):
    """A vendor call failed or returned something unusable."""


@dataclass
class TextResult:
    text: str
    usage: TokenUsage


@dataclass
class ImageResult:
    image_base64: str
    usage: Optional[TokenUsage] = None


def parse_data_url(data_url: str) -> Tuple[str, str]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, payload)."""
    match = _DATA_URL_RE.match(data_url or "")
    if not match:
        raise VendorError("Could not parse image data URL")
    return match.group(1), match.group(2)


def to_data_url(image_bytes: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def _joined(texts: List[Any]) -> str:
    return "\n".join(t for t in texts if isinstance(t, str) and t)


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class VendorEngine:
    """Common surface the pipeline drives; one subclass per vendor."""

    def __init__(self, api_key: Optional[str]) -> None:
        self.api_key = api_key

    def generate_text(
        self,
        model: str,
        prompt: str,
        image_data_url: Optional[str] = None,
    ) -> TextResult:
        raise NotImplementedError

    def edit_image(self, model: str, prompt: str, image_bytes: bytes, mime: str) -> ImageResult:
        raise NotImplementedError

    def _require_key(self, env_name: str) -> str:
        if not self.api_key:
            raise VendorError(f"{env_name} is not configured")
        return self.api_key


class OpenAIEngine(VendorEngine):
    """Responses API for text/vision, Images edit endpoint for image edits."""

    def _client(self) -> OpenAI:
        return OpenAI(api_key=self.api_key)

    def generate_text(self, model, prompt, image_data_url=None):
        if image_data_url:
            request_input: Any = [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": image_data_url},
                    ],
                }
            ]
        else:
            request_input = prompt

        t0 = time.time()
        try:
            resp = self._client().responses.create(model=model, input=request_input)
        except OpenAIStatusError as exc:
            raise VendorError(f"OpenAI text call failed: {exc.response.text}") from exc
        except OpenAIAPIError as exc:
            raise VendorError(f"OpenAI text call failed: {exc}") from exc

        data = resp.model_dump()
        text = _joined([
            block.get("text")
            for item in data.get("output") or []
            for block in (item or {}).get("content") or []
            if isinstance(block, dict)
        ])
        u = data.get("usage") or {}
        usage = TokenUsage.of(u.get("input_tokens"), u.get("output_tokens"), u.get("total_tokens"))
        log.info(
            "OpenAI text: model=%s  %d in / %d out tokens  %.1fs",
            model, usage.input, usage.output, time.time() - t0,
        )
        return TextResult(text, usage)

    def edit_image(self, model, prompt, image_bytes, mime):
        t0 = time.time()
        try:
            resp = self._client().images.edit(
                model=model,
                prompt=prompt,
                image=("input.png", image_bytes, mime),
                n=1,
                size=IMAGE_SIZE,
                output_format="png",
            )
        except OpenAIStatusError as exc:
            raise VendorError(f"OpenAI image edit failed: {exc.response.text}") from exc
        except OpenAIAPIError as exc:
            raise VendorError(f"OpenAI image edit failed: {exc}") from exc

        data = resp.model_dump()
        images = data.get("data") or []
        b64 = images[0].get("b64_json") if images and isinstance(images[0], dict) else None
        if not b64:
            raise VendorError("OpenAI image edit returned no image data")
        log.info("OpenAI image edit: model=%s  %.1fs", model, time.time() - t0)
        return ImageResult(b64)


class GeminiEngine(VendorEngine):
    """generateContent over REST for both text/vision and image edits."""

    def _post(self, model: str, body: Dict, what: str) -> Dict:
        api_key = self._require_key("GEMINI_API_KEY")
        url = f"{GEMINI_API_BASE}/models/{quote(model, safe='')}:generateContent"
        try:
            resp = requests.post(
                url,
                headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
                json=body,
                timeout=GEMINI_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise VendorError(f"Gemini {what} failed: {exc}") from exc
        if not resp.ok:
            log.error("Gemini %s: status=%s model=%s  %s", what, resp.status_code, model, resp.text[:500])
            raise VendorError(f"Gemini {what} failed: {resp.text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise VendorError(f"Gemini {what} returned invalid JSON: {resp.text[:200]}") from exc

    @staticmethod
    def _parts(data: Dict) -> List[Dict]:
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return []
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return [p for p in parts if isinstance(p, dict)]

    @staticmethod
    def _usage(data: Dict) -> TokenUsage:
        u = data.get("usageMetadata") or {}
        return TokenUsage.of(u.get("promptTokenCount"), u.get("candidatesTokenCount"), u.get("totalTokenCount"))

    def generate_text(self, model, prompt, image_data_url=None):
        parts: List[Dict] = [{"text": prompt}]
        if image_data_url:
            mime, b64 = parse_data_url(image_data_url)
            parts.append({"inline_data": {"mime_type": mime, "data": b64}})
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": 0.2},
        }

        t0 = time.time()
        data = self._post(model, body, "text call")
        text = _joined([p.get("text") for p in self._parts(data)])
        usage = self._usage(data)
        log.info(
            "Gemini text: model=%s  %d in / %d out tokens  %.1fs",
            model, usage.input, usage.output, time.time() - t0,
        )
        return TextResult(text, usage)

    def edit_image(self, model, prompt, image_bytes, mime):
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": mime,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": {"aspectRatio": ASPECT_RATIO},
            },
        }

        t0 = time.time()
        data = self._post(model, body, "image call")
        parts = self._parts(data)
        for part in parts:
            inline = part.get("inline_data") or part.get("inlineData") or {}
            if isinstance(inline, dict) and inline.get("data"):
                log.info("Gemini image edit: model=%s  %.1fs", model, time.time() - t0)
                return ImageResult(inline["data"], self._usage(data))

        fallback = _joined([p.get("text") for p in parts]) or "none"
        raise VendorError(f"Gemini image response had no image (text: {fallback})")


class AnthropicEngine(VendorEngine):
    """Messages API for text/vision; no image output."""

    def generate_text(self, model, prompt, image_data_url=None):
        api_key = self._require_key("ANTHROPIC_API_KEY")
        content: List[Dict] = [{"type": "text", "text": prompt}]
        if image_data_url:
            mime, b64 = parse_data_url(image_data_url)
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": mime, "data": b64},
            })

        t0 = time.time()
        try:
            msg = Anthropic(api_key=api_key).messages.create(
                model=model,
                max_tokens=ANTHROPIC_MAX_TOKENS,
                messages=[{"role": "user", "content": content}],
            )
        except AnthropicStatusError as exc:
            raise VendorError(f"Anthropic text call failed: {exc.response.text}") from exc
        except AnthropicAPIError as exc:
            raise VendorError(f"Anthropic text call failed: {exc}") from exc

        data = msg.model_dump()
        text = _joined([
            block.get("text")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        ])
        u = data.get("usage") or {}
        # Anthropic reports no total; always input + output
        usage = TokenUsage.of(u.get("input_tokens"), u.get("output_tokens"))
        log.info(
            "Anthropic text: model=%s  %d in / %d out tokens  %.1fs",
            model, usage.input, usage.output, time.time() - t0,
        )
        return TextResult(text, usage)

    def edit_image(self, model, prompt, image_bytes, mime):
        raise VendorError("Anthropic does not support image generation or editing")


ENGINES: Dict[str, Type[VendorEngine]] = {
    "openai": OpenAIEngine,
    "google": GeminiEngine,
    "anthropic": AnthropicEngine,
}


def get_engine(vendor: str, api_keys: Dict[str, Optional[str]]) -> VendorEngine:
    """Instantiate the engine for a wire vendor id with its API key."""
    try:
        engine_cls = ENGINES[vendor]
    except KeyError:
        raise VendorError(f"Unknown vendor: {vendor}") from None
    return engine_cls(api_keys.get(vendor))
