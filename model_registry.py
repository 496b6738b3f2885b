"""Selectable text/image models and engine-config validation.

The UI and the engineConfig blob talk in *providers* (openai | gemini |
anthropic); outbound HTTP calls are routed by *vendor* (openai | google |
anthropic). Model ids are what the UI shows and validates; ``api_model`` is
the name actually sent on the wire when it differs from the id.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

PROVIDERS = ("openai", "gemini", "anthropic")

# Anthropic models can neither produce images nor (in this app) read them.
NO_IMAGE_OUTPUT_PROVIDER = "anthropic"


@dataclass(frozen=True)
class ModelOption:
    id: str
    label: str
    provider: str
    kind: str                      # "text" | "image"
    enabled: bool = True
    api_model: Optional[str] = None
    input_image: bool = False
    output_image: bool = False
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EngineConfig:
    text_provider: str
    text_model: str
    image_provider: str
    image_model: str

    # engineConfig JSON uses camelCase keys
    _WIRE_KEYS = {
        "textProvider": "text_provider",
        "textModel": "text_model",
        "imageProvider": "image_provider",
        "imageModel": "image_model",
    }

    def to_dict(self) -> Dict[str, str]:
        return {wire: getattr(self, attr) for wire, attr in self._WIRE_KEYS.items()}

    def copy(self) -> "EngineConfig":
        return EngineConfig(**asdict(self))


DEFAULT_CONFIG = EngineConfig(
    text_provider="openai",
    text_model="gpt-4.1-mini",
    image_provider="openai",
    image_model="gpt-image-1-mini",
)

# Model used for the vision stage when the chosen text engine cannot read images
VISION_FALLBACKS = (
    ("openai", "gpt-4.1-mini"),
    ("gemini", "gemini-2.5-flash"),
)

TEXT_MODELS: List[ModelOption] = [
    ModelOption("gpt-5.2", "ChatGPT 5.2", "openai", "text", input_image=True),
    ModelOption("gpt-5.1", "ChatGPT 5.1", "openai", "text", input_image=True),
    ModelOption("gpt-4.1-mini", "ChatGPT 4.1 mini", "openai", "text", input_image=True),
    ModelOption("gemini-2.5-pro", "Gemini 2.5 Pro", "gemini", "text", input_image=True),
    ModelOption("gemini-2.5-flash", "Gemini 2.5 Flash", "gemini", "text", input_image=True),
    ModelOption(
        "claude-sonnet", "Claude Sonnet", "anthropic", "text",
        api_model="claude-3-5-sonnet-latest",
        notes="Text only; vision runs on OpenAI or Gemini.",
    ),
    ModelOption(
        "claude-haiku", "Claude Haiku", "anthropic", "text",
        api_model="claude-3-5-haiku-latest",
        notes="Text only; vision runs on OpenAI or Gemini.",
    ),
]

IMAGE_MODELS: List[ModelOption] = [
    ModelOption(
        "gpt-image-1-mini", "OpenAI gpt-image-1-mini", "openai", "image",
        input_image=True, output_image=True,
    ),
    ModelOption(
        "gpt-image-1", "OpenAI gpt-image-1", "openai", "image",
        input_image=True, output_image=True,
    ),
    ModelOption(
        "gemini-2.5-flash-image", "Gemini 2.5 Flash Image (Nano Banana)", "gemini", "image",
        input_image=True, output_image=True,
    ),
]


def get_api_vendor(provider: str) -> str:
    """Map a UI provider id to the vendor used for HTTP routing."""
    if provider == "gemini":
        return "google"
    return provider


def _models_for(kind: str) -> List[ModelOption]:
    return TEXT_MODELS if kind == "text" else IMAGE_MODELS


def get_model_option(provider: str, kind: str, model_id: str) -> Optional[ModelOption]:
    for option in _models_for(kind):
        if option.enabled and option.provider == provider and option.kind == kind and option.id == model_id:
            return option
    return None


def is_valid_text_model(provider: Any, model_id: Any) -> bool:
    return get_model_option(provider, "text", model_id) is not None


def is_valid_image_model(provider: Any, model_id: Any) -> bool:
    return get_model_option(provider, "image", model_id) is not None


def resolve_api_model(provider: str, kind: str, model_id: str) -> str:
    """Return the wire model name for a catalog id; unknown ids pass through."""
    option = get_model_option(provider, kind, model_id)
    if option and option.api_model:
        return option.api_model
    return model_id


def normalize_engine_config(raw: Any) -> EngineConfig:
    """Merge a (possibly partial or garbage) engineConfig onto the default.

    Never raises. Invalid text or image selections fall back to the
    default pair for that half of the config.
    """
    merged = DEFAULT_CONFIG.copy()
    if isinstance(raw, EngineConfig):
        merged = raw.copy()
    elif isinstance(raw, dict):
        for wire, attr in EngineConfig._WIRE_KEYS.items():
            if wire in raw:
                setattr(merged, attr, raw[wire])
            elif attr in raw:
                setattr(merged, attr, raw[attr])

    if not is_valid_text_model(merged.text_provider, merged.text_model):
        log.debug("Text engine %r/%r not in catalog, using default",
                  merged.text_provider, merged.text_model)
        merged.text_provider = DEFAULT_CONFIG.text_provider
        merged.text_model = DEFAULT_CONFIG.text_model

    if merged.image_provider == NO_IMAGE_OUTPUT_PROVIDER:
        merged.image_provider = DEFAULT_CONFIG.image_provider
        merged.image_model = DEFAULT_CONFIG.image_model

    if not is_valid_image_model(merged.image_provider, merged.image_model):
        log.debug("Image engine %r/%r not in catalog, using default",
                  merged.image_provider, merged.image_model)
        merged.image_provider = DEFAULT_CONFIG.image_provider
        merged.image_model = DEFAULT_CONFIG.image_model

    return merged


def catalog() -> Dict[str, Any]:
    """JSON-friendly view of the catalog for the settings UI."""
    return {
        "text_models": [m.to_dict() for m in TEXT_MODELS if m.enabled],
        "image_models": [m.to_dict() for m in IMAGE_MODELS if m.enabled],
        "default_config": DEFAULT_CONFIG.to_dict(),
    }
