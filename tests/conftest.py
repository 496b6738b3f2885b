"""Shared fixtures: throwaway database, no real API keys, scripted vendors."""

import os
import tempfile

# app.py initialises the database at import time; keep that out of the repo
os.environ.setdefault("STUDIO_DB_PATH", os.path.join(tempfile.mkdtemp(), "import.db"))

import pytest

import costs
import db
import vendors

KEY_VARS = ("OPENAI_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY", "ADMIN_KEY")

VISION_REPLY = (
    '{"product_type": "sneaker", '
    '"immutable_elements": ["blue suede upper", "white sole", "side swoosh logo"], '
    '"distinguishing_features": ["gum outsole"]}'
)
CONCEPT_REPLY = (
    "Here is the direction you asked for:\n"
    '{"one_line_concept": "Cool blue studio with soft rim light", '
    '"product_description": "blue suede low-top sneaker with white sole", '
    '"background": "seamless pale grey sweep", '
    '"lighting_setup": "three-point softbox setup", '
    '"lighting_purpose": "reveal the suede texture", '
    '"camera_angle": "3/4 front angle", '
    '"showcase_feature": "the side logo", '
    '"key_detail": "stitching", '
    '"aspect_ratio": "1:1"}'
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    for name in KEY_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "test.db")
    db.init_db()
    yield


class VendorScript:
    """Canned replies and a call log shared by the fake engines."""

    def __init__(self):
        self.calls = []
        self.text_replies = [VISION_REPLY, CONCEPT_REPLY]
        self.text_usage = costs.TokenUsage.of(1000, 500)
        self.image_b64 = "aW1hZ2UtYnl0ZXM="
        self.image_usage = costs.TokenUsage.of(200, 0)
        self.image_error = None

    def kinds(self):
        return [c[1] for c in self.calls]


@pytest.fixture
def fake_vendors(monkeypatch):
    script = VendorScript()

    def make(vendor_id):
        class FakeEngine(vendors.VendorEngine):
            def generate_text(self, model, prompt, image_data_url=None):
                script.calls.append((vendor_id, "text", model, prompt, image_data_url))
                reply = script.text_replies.pop(0)
                if isinstance(reply, Exception):
                    raise reply
                return vendors.TextResult(reply, script.text_usage)

            def edit_image(self, model, prompt, image_bytes, mime):
                script.calls.append((vendor_id, "image", model, prompt, mime))
                if script.image_error is not None:
                    raise script.image_error
                return vendors.ImageResult(script.image_b64, script.image_usage)

        return FakeEngine

    for vendor_id in list(vendors.ENGINES):
        monkeypatch.setitem(vendors.ENGINES, vendor_id, make(vendor_id))
    return script
