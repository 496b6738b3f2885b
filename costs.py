"""Cost estimation for studio-shot requests.

Text calls are priced from token counts. Image edits are priced per image
(1024x1024 is the only size the app requests). Rates are USD and are
refreshed by hand when vendors change their price sheets.

Unknown (vendor, model) pairs cost 0 rather than failing the request.
A warning is logged so the gap shows up in logs/studio.log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

log = logging.getLogger(__name__)

PER_M = 1_000_000

# (input $/1M tokens, output $/1M tokens), keyed by vendor then wire model
TEXT_RATES: Dict[str, Dict[str, tuple]] = {
    "openai": {
        "gpt-5.2":      (3.50, 28.00),
        "gpt-5.1":      (2.50, 20.00),
        "gpt-4.1-mini": (0.70,  2.80),
    },
    "google": {
        "gemini-2.5-pro":   (1.25, 10.00),
        "gemini-2.5-flash": (0.30,  2.50),
    },
    "anthropic": {
        "claude-3-5-sonnet-latest": (3.00, 15.00),
        "claude-3-5-haiku-latest":  (0.80,  4.00),
    },
}

# $/image at 1024x1024
_OPENAI_IMAGE_TIERS: Dict[str, Dict[str, float]] = {
    "gpt-image-1-mini": {"low": 0.005, "medium": 0.011, "high": 0.036},
    "gpt-image-1":      {"low": 0.011, "medium": 0.042, "high": 0.167},
}
_GOOGLE_IMAGE_FIXED: Dict[str, float] = {
    "gemini-2.5-flash-image": 0.039,
}
# Flash Image bills its text input like 2.5 Flash; its output is billed per image
_GOOGLE_IMAGE_INPUT_MODEL = "gemini-2.5-flash"


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0

    @classmethod
    def of(cls, input_tokens: Optional[int], output_tokens: Optional[int],
           total_tokens: Optional[int] = None) -> "TokenUsage":
        """Build from vendor-reported counts; missing values count as 0."""
        i = int(input_tokens or 0)
        o = int(output_tokens or 0)
        return cls(i, o, int(total_tokens or 0) or i + o)


def _usd(amount: float) -> float:
    return round(amount, 6)


def calc_text_cost_usd(vendor: str, wire_model: str, usage: TokenUsage) -> float:
    """Token cost of one text/vision call."""
    rate = TEXT_RATES.get(vendor, {}).get(wire_model)
    if rate is None:
        log.warning("No text pricing for %s/%s, recording $0", vendor, wire_model)
        return 0.0
    in_rate, out_rate = rate
    return _usd(usage.input / PER_M * in_rate + usage.output / PER_M * out_rate)


def calc_image_cost_usd(
    vendor: str,
    wire_model: str,
    image_count: int = 1,
    quality: str = "low",
    usage: Optional[TokenUsage] = None,
) -> float:
    """Cost of an image-edit call under the vendor's billing scheme."""
    if vendor == "openai":
        tiers = _OPENAI_IMAGE_TIERS.get(wire_model)
        if not tiers:
            log.warning("No image pricing for %s/%s, recording $0", vendor, wire_model)
            return 0.0
        per_image = tiers.get(quality, tiers.get("low", 0.0))
        return _usd(per_image * image_count)

    if vendor == "google":
        per_image = _GOOGLE_IMAGE_FIXED.get(wire_model)
        if per_image is None:
            log.warning("No image pricing for %s/%s, recording $0 per image", vendor, wire_model)
            per_image = 0.0
        in_rate = TEXT_RATES["google"][_GOOGLE_IMAGE_INPUT_MODEL][0]
        in_tokens = usage.input if usage else 0
        return _usd(in_tokens / PER_M * in_rate + per_image * image_count)

    return 0.0


class CostTracker:
    """Accumulates per-stage cost records for a single request."""

    def __init__(self) -> None:
        self.items: List[Dict] = []

    def record_text(
        self,
        stage: str,
        provider: str,
        vendor: str,
        model: str,
        usage: TokenUsage,
    ) -> Dict:
        """Price a text/vision call and return the resulting line item."""
        cost = calc_text_cost_usd(vendor, model, usage)
        item = {
            "stage": stage,
            "provider": provider,
            "model": model,
            "input_tokens": usage.input,
            "output_tokens": usage.output,
            "total_tokens": usage.total,
            "cost_usd": cost,
        }
        self.items.append(item)
        log.debug(
            "Text cost [%s] %s/%s  %d in / %d out tokens  $%.6f",
            stage, provider, model, usage.input, usage.output, cost,
        )
        return item

    def record_image(
        self,
        stage: str,
        provider: str,
        vendor: str,
        model: str,
        image_count: int = 1,
        image_size: int = 1024,
        quality: str = "low",
        usage: Optional[TokenUsage] = None,
    ) -> Dict:
        """Price an image call and return the resulting line item."""
        cost = calc_image_cost_usd(vendor, model, image_count, quality, usage)
        item = {
            "stage": stage,
            "provider": provider,
            "model": model,
            "image_size": image_size,
            "image_count": image_count,
            "cost_usd": cost,
        }
        self.items.append(item)
        log.debug(
            "Image cost [%s] %s/%s  %d × %dpx (%s)  $%.6f",
            stage, provider, model, image_count, image_size, quality, cost,
        )
        return item

    @property
    def total(self) -> float:
        return _usd(sum(i["cost_usd"] for i in self.items))

    def summary(self) -> Dict:
        by_stage: Dict[str, float] = {}
        for item in self.items:
            by_stage[item["stage"]] = _usd(by_stage.get(item["stage"], 0.0) + item["cost_usd"])
        return {"items": self.items, "by_stage": by_stage, "total": self.total}
