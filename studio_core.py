"""Product studio-shot pipeline. Used by both the web app and the CLI.

One request runs three vendor calls in order:

  VISION      read the uploaded photo, list what must never change
  CONCEPT     fill the studio-photo template slots (background, light, angle…)
  IMAGE_EDIT  re-render the photo with the product locked

Each stage writes a cost line item as soon as it finishes; the request log
row is closed once, either as a success or with the error message.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Callable, Dict, Optional, Tuple

import costs
import db
import log_setup
import model_registry as registry
import vendors

log = logging.getLogger(__name__)

STAGE_VISION = "VISION"
STAGE_CONCEPT = "CONCEPT"
STAGE_IMAGE_EDIT = "IMAGE_EDIT"

KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "google": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# Image edits are always billed as one low-quality 1024px image
IMAGE_QUALITY = "low"
IMAGE_SIZE_PX = 1024
IMAGE_COUNT = 1

DEFAULT_MIME = "image/png"
DEFAULT_CONCEPT_USED = "Studio mood that puts the product first"

DIRECTION_SLOTS = (
    "product_description",
    "background",
    "lighting_setup",
    "lighting_purpose",
    "camera_angle",
    "showcase_feature",
    "key_detail",
    "aspect_ratio",
)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class PipelineError(RuntimeError):
    """A request-level failure with the HTTP status it should map to."""

    status = 500

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


class ValidationError(PipelineError):
    status = 400


class ConfigError(PipelineError):
    status = 500


def api_keys() -> Dict[str, Optional[str]]:
    """Vendor -> API key from the environment (None when unset)."""
    return {vendor: os.environ.get(env) or None for vendor, env in KEY_ENV.items()}


def provider_availability() -> Dict[str, bool]:
    keys = api_keys()
    return {
        "openai": bool(keys["openai"]),
        "gemini": bool(keys["google"]),
        "anthropic": bool(keys["anthropic"]),
    }


# ---------------------------------------------------------------------------
# Model-output parsing
# ---------------------------------------------------------------------------

def safe_parse_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of model output.

    Tries the whole text first, then the span from the first ``{`` to the
    last ``}`` so chatter around the object is tolerated. Returns None when
    no object can be recovered.
    """
    if not text:
        return None
    text = text.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def parse_engine_config(raw: Any) -> Dict[str, Any]:
    """Decode the engineConfig form field; anything malformed becomes {}."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, registry.EngineConfig):
        return raw.to_dict()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        log.debug("Ignoring malformed engineConfig: %r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def default_vision(raw_text: str) -> Dict[str, Any]:
    return {
        "product_type": "product",
        "immutable_elements": [],
        "distinguishing_features": [],
        "raw": raw_text,
    }


def default_direction(user_concept: str = "") -> Dict[str, str]:
    return {
        "one_line_concept": user_concept or "Clean studio lighting that keeps the product crisp",
        "product_description": "the product (accurate description required)",
        "background": "a clean neutral studio surface",
        "lighting_setup": "three-point softbox setup",
        "lighting_purpose": "create a clean premium silhouette and reveal texture",
        "camera_angle": "3/4 front angle",
        "showcase_feature": "the product's main form and key brand elements",
        "key_detail": "material texture and stitching",
        "aspect_ratio": "1:1",
    }


def complete_direction(parsed: Optional[Dict[str, Any]], user_concept: str = "") -> Dict[str, Any]:
    """Fill missing or blank template slots from the default direction."""
    fallback = default_direction(user_concept)
    if parsed is None:
        return fallback
    direction = dict(parsed)
    for slot in DIRECTION_SLOTS:
        value = direction.get(slot)
        if not isinstance(value, str) or not value.strip():
            direction[slot] = fallback[slot]
    return direction


def pick_concept_used(direction: Dict[str, Any], user_concept: str = "") -> str:
    one_line = direction.get("one_line_concept")
    if isinstance(one_line, str) and one_line.strip():
        return one_line.strip()
    return user_concept or DEFAULT_CONCEPT_USED


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def build_vision_prompt(title: str) -> str:
    return f"""
You are analyzing an e-commerce product photo.

Goal:
- Extract the product characteristics that must stay fixed, so the product can be treated as LOCKED in later steps.

CRITICAL RULES:
- The product must NEVER change in shape, proportions, structure, logo, printed text, or color.
- Identify what must remain identical. Do NOT suggest styling changes.
- Return ONLY JSON. No extra text.

Product title: {title}

JSON schema:
{{
  "product_type": "short category description",
  "immutable_elements": [
    "shape characteristics",
    "colorway",
    "logo placement",
    "printed text on the product (if any)",
    "material/texture cues"
  ],
  "distinguishing_features": [
    "feature 1",
    "feature 2"
  ]
}}
""".strip()


def build_concept_prompt(title: str, vision: Dict[str, Any], user_concept: str = "") -> str:
    return f"""
You are a professional e-commerce product art director.

Task:
- Fill the slots of a studio product photo prompt template.
- If the user gave a concept, follow it. Otherwise choose sensible defaults.
- The product is LOCKED. Only background, lighting, camera angle, composition, and mood may change.

CRITICAL RULES:
- NEVER change the product shape, proportions, structure, logo, printed text, or colorway.
- Do NOT add any text, typography, slogans, badges, stickers, labels, or watermarks.
- Return ONLY JSON. No extra text.

Product title: {title}
Vision JSON: {json.dumps(vision, ensure_ascii=False)}
User requested concept (optional): {user_concept or "(none)"}

Return ONLY this JSON (exact keys):
{{
  "one_line_concept": "one short sentence describing the direction",
  "product_description": "factual physical description of the product (color/material; do NOT invent parts)",
  "background": "studio-friendly background surface",
  "lighting_setup": "lighting setup (e.g., three-point softbox setup)",
  "lighting_purpose": "what the lighting achieves (e.g., reveal texture, clean silhouette)",
  "camera_angle": "camera angle (e.g., 3/4 front, top-down, straight-on)",
  "showcase_feature": "feature to showcase (e.g., logo placement, zipper details)",
  "key_detail": "detail kept in sharp focus (e.g., stitching, texture)",
  "aspect_ratio": "1:1"
}}
""".strip()


def build_image_prompt(title: str, vision: Dict[str, Any], direction: Dict[str, Any]) -> str:
    immutable = vision.get("immutable_elements")
    if not isinstance(immutable, list):
        immutable = []
    immutable = [str(e) for e in immutable if e]
    immutable_line = f"- Immutable elements: {'; '.join(immutable)}" if immutable else ""

    d = direction
    return f"""
This is a background and lighting adjustment task only. Treat the product as LOCKED and immutable.
The product must remain 100% identical in shape, proportions, structure, logo, printed text, and colorway.
No redesign. No modification. No distortion. No stylization.
{immutable_line}

A high-resolution, studio-lit product photograph of a {d["product_description"]}
on a {d["background"]}. The lighting is a {d["lighting_setup"]}
to {d["lighting_purpose"]}. The camera angle is a {d["camera_angle"]}
to showcase {d["showcase_feature"]}. Ultra-realistic, with sharp focus on {d["key_detail"]}. {d["aspect_ratio"]}.

STRICT TEXT RULES:
- Do NOT add any text, typography, letters, numbers, slogans, badges, labels, stickers, or watermarks.
- Remove any floating or background text that is NOT physically printed on the product.
- Text that is part of the product itself stays exactly as it is.
- No advertisement-style overlays.
- Do not add props or effects that imply functionality the product does not have.

Product title: {title}
""".strip()


# ---------------------------------------------------------------------------
# Engine selection
# ---------------------------------------------------------------------------

def choose_vision_engine(
    cfg: registry.EngineConfig,
    keys: Dict[str, Optional[str]],
) -> Tuple[str, str, str]:
    """Return (provider, vendor, wire_model) for the vision stage.

    The configured text engine is used when it can read images; otherwise
    the first fallback in VISION_FALLBACKS whose key is present.
    """
    option = registry.get_model_option(cfg.text_provider, "text", cfg.text_model)
    if option is not None and option.input_image:
        return (
            cfg.text_provider,
            registry.get_api_vendor(cfg.text_provider),
            registry.resolve_api_model(cfg.text_provider, "text", cfg.text_model),
        )

    for provider, model_id in registry.VISION_FALLBACKS:
        vendor = registry.get_api_vendor(provider)
        if keys.get(vendor):
            log.debug("Vision fallback: %s/%s cannot read images, using %s/%s",
                      cfg.text_provider, cfg.text_model, provider, model_id)
            return provider, vendor, registry.resolve_api_model(provider, "text", model_id)

    raise ConfigError(
        f"{cfg.text_model} cannot analyse images; "
        "OPENAI_API_KEY or GEMINI_API_KEY is required for the vision step."
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class StudioPipeline:
    """Runs one studio-shot request end to end."""

    def __init__(
        self,
        title: str,
        image_bytes: Optional[bytes],
        mime: Optional[str] = None,
        user_concept: str = "",
        engine_config: Any = None,
        keys: Optional[Dict[str, Optional[str]]] = None,
        progress_cb: Optional[Callable[[Dict], None]] = None,
    ) -> None:
        self.title = (title or "").strip()
        self.user_concept = (user_concept or "").strip()
        self.image_bytes = image_bytes
        self.mime = mime or DEFAULT_MIME
        self.requested_config = parse_engine_config(engine_config)
        self.config = registry.normalize_engine_config(self.requested_config)
        self.keys = keys if keys is not None else api_keys()
        self.progress_cb = progress_cb
        self.cost_tracker = costs.CostTracker()
        self.request_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(self, stage: str, status: str, message: str) -> None:
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "%s: %s", stage, message)
        if not self.progress_cb:
            return
        # A broken progress listener (closed pipe, gone client) must not
        # decide the outcome of the request or leave its log row open.
        try:
            self.progress_cb({"stage": stage, "status": status, "message": message, "ts": time.time()})
        except Exception:
            log.warning("Progress callback failed on %s/%s", stage, status, exc_info=True)

    # ------------------------------------------------------------------
    # INIT
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        if not self.title:
            raise ValidationError("title is required")
        if not self.image_bytes:
            raise ValidationError("image is required")

        requested_image = self.requested_config.get("imageProvider",
                                                    self.requested_config.get("image_provider"))
        if requested_image == registry.NO_IMAGE_OUTPUT_PROVIDER:
            raise ConfigError("Anthropic does not support image generation or editing", status=400)

        cfg = self.config
        for vendor in (registry.get_api_vendor(cfg.text_provider),
                       registry.get_api_vendor(cfg.image_provider)):
            if not self.keys.get(vendor):
                raise ConfigError(f"{KEY_ENV[vendor]} is not configured")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _record(self, item: Dict) -> None:
        db.add_cost_line_item(self.request_id, item)

    def run_vision(self) -> Dict[str, Any]:
        provider, vendor, wire_model = choose_vision_engine(self.config, self.keys)
        self._emit(STAGE_VISION, "started", f"Analysing product photo via {wire_model}…")

        engine = vendors.get_engine(vendor, self.keys)
        result = engine.generate_text(
            wire_model,
            build_vision_prompt(self.title),
            image_data_url=vendors.to_data_url(self.image_bytes, self.mime),
        )
        self._record(self.cost_tracker.record_text(STAGE_VISION, provider, vendor, wire_model, result.usage))

        vision = safe_parse_json(result.text)
        if vision is None:
            log.warning("Vision output was not JSON, using defaults")
            vision = default_vision(result.text)
        self._emit(STAGE_VISION, "completed", f"Product type: {vision.get('product_type', 'product')}")
        return vision

    def run_concept(self, vision: Dict[str, Any]) -> Dict[str, Any]:
        cfg = self.config
        vendor = registry.get_api_vendor(cfg.text_provider)
        wire_model = registry.resolve_api_model(cfg.text_provider, "text", cfg.text_model)
        self._emit(STAGE_CONCEPT, "started", f"Writing studio concept via {wire_model}…")

        engine = vendors.get_engine(vendor, self.keys)
        result = engine.generate_text(
            wire_model,
            build_concept_prompt(self.title, vision, self.user_concept),
        )
        self._record(self.cost_tracker.record_text(STAGE_CONCEPT, cfg.text_provider, vendor, wire_model, result.usage))

        parsed = safe_parse_json(result.text)
        if parsed is None:
            log.warning("Concept output was not JSON, using defaults")
        direction = complete_direction(parsed, self.user_concept)
        self._emit(STAGE_CONCEPT, "completed", f"Concept: {pick_concept_used(direction, self.user_concept)}")
        return direction

    def run_image_edit(self, vision: Dict[str, Any], direction: Dict[str, Any]) -> str:
        cfg = self.config
        vendor = registry.get_api_vendor(cfg.image_provider)
        wire_model = registry.resolve_api_model(cfg.image_provider, "image", cfg.image_model)
        self._emit(STAGE_IMAGE_EDIT, "started", f"Rendering studio shot via {wire_model}…")

        engine = vendors.get_engine(vendor, self.keys)
        result = engine.edit_image(
            wire_model,
            build_image_prompt(self.title, vision, direction),
            self.image_bytes,
            self.mime,
        )
        # Only Gemini bills image-call input tokens
        usage = result.usage if vendor == "google" else None
        self._record(self.cost_tracker.record_image(
            STAGE_IMAGE_EDIT, cfg.image_provider, vendor, wire_model,
            image_count=IMAGE_COUNT, image_size=IMAGE_SIZE_PX, quality=IMAGE_QUALITY, usage=usage,
        ))
        self._emit(STAGE_IMAGE_EDIT, "completed", "Studio shot ready")
        return result.image_base64

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self) -> Dict[str, Any]:
        """Execute the whole pipeline. Raises PipelineError / VendorError."""
        start = time.time()
        self._validate()

        cfg = self.config
        self.request_id = db.create_request_log(
            title=self.title,
            user_concept=self.user_concept or None,
            config=cfg,
        )
        with log_setup.request_context(self.request_id):
            log.info(
                "Request %r  text=%s/%s  image=%s/%s",
                self.title, cfg.text_provider, cfg.text_model, cfg.image_provider, cfg.image_model,
            )
            try:
                vision = self.run_vision()
                direction = self.run_concept(vision)
                concept_used = pick_concept_used(direction, self.user_concept)
                image_b64 = self.run_image_edit(vision, direction)

                latency_ms = int((time.time() - start) * 1000)
                total = self.cost_tracker.total
                db.complete_request_log(self.request_id, concept_used, total, latency_ms)
            except Exception as exc:
                latency_ms = int((time.time() - start) * 1000)
                log.error("Request failed after %dms: %s", latency_ms, exc)
                # Close the row before anything else can go wrong
                db.fail_request_log(self.request_id, str(exc) or exc.__class__.__name__, latency_ms)
                self._emit("pipeline", "failed", str(exc))
                raise

            log.info("Request complete: $%.6f  %dms", total, latency_ms)
            self._emit("pipeline", "completed", f"Done in {latency_ms / 1000:.1f}s")

        return {
            "request_id": self.request_id,
            "concept_used": concept_used,
            "image_base64": image_b64,
            "total_cost_usd": total,
            "latency_ms": latency_ms,
            "costs": self.cost_tracker.summary(),
        }
