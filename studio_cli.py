#!/usr/bin/env python3
"""CLI wrapper for the studio-shot pipeline.

Usage:
    python studio_cli.py --image sneaker.jpg --title "Blue Sneaker"
    python studio_cli.py --image mug.png --title "Ceramic Mug" --concept "warm morning kitchen" \
        --text-provider anthropic --text-model claude-haiku --image-provider gemini \
        --image-model gemini-2.5-flash-image
"""

from __future__ import annotations

import argparse
import base64
import json
import mimetypes
import sys
from pathlib import Path
from typing import TextIO

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import db
import model_registry
import studio_core
import vendors


def main() -> int:
    defaults = model_registry.DEFAULT_CONFIG
    parser = argparse.ArgumentParser(
        description="Re-render a product photo as a studio shot with the product locked",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--image", default=None, help="Path to the product photo")
    parser.add_argument("--title", default=None, help="Product title")
    parser.add_argument("--concept", default="", help="Optional studio concept (background, mood…)")
    parser.add_argument(
        "--text-provider",
        choices=model_registry.PROVIDERS,
        default=defaults.text_provider,
        help=f"Provider for vision/concept text (default: {defaults.text_provider})",
    )
    parser.add_argument(
        "--text-model",
        default=defaults.text_model,
        help=f"Text model id (default: {defaults.text_model})",
    )
    parser.add_argument(
        "--image-provider",
        choices=model_registry.PROVIDERS,
        default=defaults.image_provider,
        help=f"Provider for the image edit (default: {defaults.image_provider})",
    )
    parser.add_argument(
        "--image-model",
        default=defaults.image_model,
        help=f"Image model id (default: {defaults.image_model})",
    )
    parser.add_argument("--output", default=None, help="Where to write the PNG (default: <image>_studio.png)")
    parser.add_argument("--json", action="store_true", help="Print the result summary as JSON")
    parser.add_argument("--list-models", action="store_true", help="List selectable models and exit")

    args = parser.parse_args()

    if args.list_models:
        _list_models()
        return 0

    if not args.image:
        parser.error("--image is required")
    if not args.title:
        parser.error("--title is required")

    image_path = Path(args.image)
    if not image_path.is_file():
        print(f"✗  No such file: {image_path}", file=sys.stderr)
        return 2

    # --json keeps stdout for the machine-readable summary
    out = sys.stderr if args.json else sys.stdout

    mime = mimetypes.guess_type(image_path.name)[0] or studio_core.DEFAULT_MIME
    output = Path(args.output) if args.output else image_path.with_name(f"{image_path.stem}_studio.png")

    engine_config = {
        "textProvider": args.text_provider,
        "textModel": args.text_model,
        "imageProvider": args.image_provider,
        "imageModel": args.image_model,
    }

    def progress_cb(event: dict) -> None:
        prefix = {
            "started":   "  ◌ ",
            "completed": "  ✓ ",
            "failed":    "  ✗ ",
        }.get(event.get("status", ""), "    ")
        _echo(f"{prefix}{event.get('stage', '')}: {event.get('message', '')}", out)

    db.init_db()
    pipeline = studio_core.StudioPipeline(
        title=args.title,
        image_bytes=image_path.read_bytes(),
        mime=mime,
        user_concept=args.concept,
        engine_config=engine_config,
        progress_cb=progress_cb,
    )
    cfg = pipeline.config

    _echo("\n  ✦ Product Studio Shot CLI", out)
    _echo(f"  Title  : {args.title}", out)
    _echo(f"  Text   : {cfg.text_provider}/{cfg.text_model}", out)
    _echo(f"  Image  : {cfg.image_provider}/{cfg.image_model}", out)
    _echo(f"  Output : {output}\n", out)

    try:
        result = pipeline.run()
    except studio_core.PipelineError as exc:
        print(f"\n✗  {exc}", file=sys.stderr)
        return 2
    except vendors.VendorError as exc:
        print(f"\n✗  {exc}", file=sys.stderr)
        return 1

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(base64.b64decode(result["image_base64"]))

    by_stage = result["costs"]["by_stage"]
    _echo("\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━", out)
    _echo(f"  Concept : {result['concept_used']}", out)
    _echo(f"  Latency : {result['latency_ms'] / 1000:.1f}s", out)
    _echo(
        f"  Cost    : ${result['total_cost_usd']:.6f}  ("
        + "  ".join(f"{stage} ${cost:.6f}" for stage, cost in by_stage.items())
        + ")",
        out,
    )
    _echo(f"  Saved   : {output}\n", out)

    if args.json:
        print(json.dumps({
            "request_id": result["request_id"],
            "concept_used": result["concept_used"],
            "output": str(output),
            "total_cost_usd": result["total_cost_usd"],
            "latency_ms": result["latency_ms"],
            "costs": by_stage,
        }, indent=2))

    return 0


def _list_models() -> None:
    available = studio_core.provider_availability()

    print("\nText Models")
    print("─" * 40)
    for m in model_registry.TEXT_MODELS:
        if not m.enabled:
            continue
        wire = f"  → {m.api_model}" if m.api_model else ""
        flag = "" if available.get(m.provider) else "  (no key)"
        print(f"  {m.provider:<10} {m.id}{wire}{flag}")

    print("\nImage Models")
    print("─" * 40)
    for m in model_registry.IMAGE_MODELS:
        if not m.enabled:
            continue
        flag = "" if available.get(m.provider) else "  (no key)"
        print(f"  {m.provider:<10} {m.id}{flag}")
    print()


def _echo(msg: str, stream: TextIO) -> None:
    print(msg, file=stream, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
