"""
Unit tests for the studio pipeline: JSON recovery, prompts, engine choice,
and stage bookkeeping.
"""

import json
import sqlite3

import pytest

import db
import model_registry as registry
import studio_core
from studio_core import ConfigError, StudioPipeline, ValidationError
from vendors import VendorError

ALL_KEYS = {"openai": "sk-o", "google": "g-key", "anthropic": "a-key"}


class TestSafeParseJson:

    def test_plain_object_round_trips(self):
        original = {"product_type": "mug", "immutable_elements": ["handle", "glaze"], "n": 2, "nested": {"a": None}}
        assert studio_core.safe_parse_json(json.dumps(original)) == original

    def test_commentary_around_object(self):
        text = 'Sure! Here it is:\n{"a": 1, "b": {"c": [1, 2]}}\nLet me know if you need more.'
        assert studio_core.safe_parse_json(text) == {"a": 1, "b": {"c": [1, 2]}}

    def test_markdown_fence(self):
        assert studio_core.safe_parse_json('```json\n{"a": "x"}\n```') == {"a": "x"}

    @pytest.mark.parametrize("text", ["", None, "no json here", "{not: valid}", "{broken", "[1, 2, 3]", "42"])
    def test_no_object_gives_none(self, text):
        assert studio_core.safe_parse_json(text) is None

    def test_two_objects_is_unrecoverable(self):
        # first "{" to last "}" spans both objects and is not valid JSON
        assert studio_core.safe_parse_json('{"a": 1} and {"b": 2}') is None


class TestParseEngineConfig:

    def test_json_string(self):
        assert studio_core.parse_engine_config('{"textProvider": "gemini"}') == {"textProvider": "gemini"}

    @pytest.mark.parametrize("raw", [None, "", "{oops", "[1]", "null"])
    def test_malformed_is_empty(self, raw):
        assert studio_core.parse_engine_config(raw) == {}


class TestDirection:

    def test_missing_slots_are_filled(self):
        direction = studio_core.complete_direction({"background": "marble slab", "key_detail": ""})
        assert direction["background"] == "marble slab"
        assert direction["key_detail"] == studio_core.default_direction()["key_detail"]
        for slot in studio_core.DIRECTION_SLOTS:
            assert isinstance(direction[slot], str) and direction[slot]

    def test_default_uses_user_concept(self):
        direction = studio_core.complete_direction(None, "sunset beach")
        assert direction["one_line_concept"] == "sunset beach"

    def test_concept_used_prefers_model_summary(self):
        assert studio_core.pick_concept_used({"one_line_concept": "  Moody dark oak  "}, "beach") == "Moody dark oak"

    def test_concept_used_falls_back_to_user_concept(self):
        assert studio_core.pick_concept_used({"one_line_concept": "   "}, "beach") == "beach"
        assert studio_core.pick_concept_used({"one_line_concept": 7}, "beach") == "beach"

    def test_concept_used_default_phrase(self):
        assert studio_core.pick_concept_used({}, "") == studio_core.DEFAULT_CONCEPT_USED


class TestPrompts:

    def test_vision_prompt_mentions_title_and_schema(self):
        prompt = studio_core.build_vision_prompt("Blue Sneaker")
        assert "Product title: Blue Sneaker" in prompt
        assert '"immutable_elements"' in prompt

    def test_concept_prompt_embeds_vision_and_concept(self):
        prompt = studio_core.build_concept_prompt("Mug", {"product_type": "mug"}, "")
        assert '{"product_type": "mug"}' in prompt
        assert "(none)" in prompt
        assert "sunrise" in studio_core.build_concept_prompt("Mug", {}, "sunrise")

    def test_image_prompt(self):
        direction = studio_core.default_direction()
        direction["background"] = "polished concrete"
        prompt = studio_core.build_image_prompt(
            "Blue Sneaker", {"immutable_elements": ["white sole", "side logo"]}, direction,
        )
        assert "- Immutable elements: white sole; side logo" in prompt
        assert "on a polished concrete." in prompt
        assert "STRICT TEXT RULES" in prompt
        assert prompt.endswith("Product title: Blue Sneaker")

    def test_image_prompt_without_immutables(self):
        prompt = studio_core.build_image_prompt("X", {"immutable_elements": "oops"}, studio_core.default_direction())
        assert "Immutable elements" not in prompt


class TestChooseVisionEngine:

    def test_configured_engine_when_it_reads_images(self):
        cfg = registry.normalize_engine_config({"textProvider": "gemini", "textModel": "gemini-2.5-pro"})
        assert studio_core.choose_vision_engine(cfg, {}) == ("gemini", "google", "gemini-2.5-pro")

    def test_claude_falls_back_to_openai_first(self):
        cfg = registry.normalize_engine_config({"textProvider": "anthropic", "textModel": "claude-sonnet"})
        assert studio_core.choose_vision_engine(cfg, ALL_KEYS) == ("openai", "openai", "gpt-4.1-mini")

    def test_claude_falls_back_to_gemini_without_openai_key(self):
        cfg = registry.normalize_engine_config({"textProvider": "anthropic", "textModel": "claude-haiku"})
        keys = {"google": "g-key", "anthropic": "a-key"}
        assert studio_core.choose_vision_engine(cfg, keys) == ("gemini", "google", "gemini-2.5-flash")

    def test_claude_without_any_fallback_key(self):
        cfg = registry.normalize_engine_config({"textProvider": "anthropic", "textModel": "claude-haiku"})
        with pytest.raises(ConfigError, match="OPENAI_API_KEY or GEMINI_API_KEY"):
            studio_core.choose_vision_engine(cfg, {"anthropic": "a-key"})


def _line_items(request_id):
    return [(i["stage"], i["provider"], i["model"]) for i in db.list_line_items(request_id)]


class TestStudioPipeline:

    def test_validation_happens_before_logging(self, fake_vendors):
        with pytest.raises(ValidationError, match="title"):
            StudioPipeline("   ", b"img", keys=ALL_KEYS).run()
        with pytest.raises(ValidationError, match="image"):
            StudioPipeline("Mug", b"", keys=ALL_KEYS).run()
        assert db.list_request_logs() == []
        assert fake_vendors.calls == []

    def test_missing_text_key(self, fake_vendors):
        cfg = {"textProvider": "gemini", "textModel": "gemini-2.5-flash"}
        with pytest.raises(ConfigError, match="GEMINI_API_KEY") as info:
            StudioPipeline("Mug", b"img", engine_config=cfg, keys={"openai": "sk-o"}).run()
        assert info.value.status == 500
        assert db.list_request_logs() == []
        assert fake_vendors.calls == []

    def test_anthropic_image_engine_is_rejected(self, fake_vendors):
        cfg = {"imageProvider": "anthropic", "imageModel": "claude-sonnet"}
        with pytest.raises(ConfigError) as info:
            StudioPipeline("Mug", b"img", engine_config=json.dumps(cfg), keys=ALL_KEYS).run()
        assert info.value.status == 400
        assert fake_vendors.calls == []

    def test_full_run_with_claude_text(self, fake_vendors):
        cfg = {
            "textProvider": "anthropic", "textModel": "claude-haiku",
            "imageProvider": "gemini", "imageModel": "gemini-2.5-flash-image",
        }
        keys = {"google": "g-key", "anthropic": "a-key"}
        pipeline = StudioPipeline("Blue Sneaker", b"img", "image/jpeg", "", cfg, keys=keys)
        result = pipeline.run()

        assert [(c[0], c[1], c[2]) for c in fake_vendors.calls] == [
            ("google", "text", "gemini-2.5-flash"),
            ("anthropic", "text", "claude-3-5-haiku-latest"),
            ("google", "image", "gemini-2.5-flash-image"),
        ]
        # only the vision call carries the photo
        assert fake_vendors.calls[0][4].startswith("data:image/jpeg;base64,")
        assert fake_vendors.calls[1][4] is None
        assert _line_items(result["request_id"]) == [
            ("VISION", "gemini", "gemini-2.5-flash"),
            ("CONCEPT", "anthropic", "claude-3-5-haiku-latest"),
            ("IMAGE_EDIT", "gemini", "gemini-2.5-flash-image"),
        ]
        # 1000/500 tokens on 2.5 Flash and Haiku, plus 0.039 + 200 input tokens
        expected = 0.00155 + 0.0028 + 0.03906
        assert result["total_cost_usd"] == pytest.approx(expected)
        row = db.get_request_log(result["request_id"])
        assert row["success"] is True
        assert row["total_cost_usd"] == pytest.approx(expected)

    def test_unparseable_model_output_uses_defaults(self, fake_vendors):
        fake_vendors.text_replies = ["I see a red mug.", "Sorry, no JSON today."]
        result = StudioPipeline("Red Mug", b"img", user_concept="rustic table", keys=ALL_KEYS).run()

        assert result["concept_used"] == "rustic table"
        image_prompt = fake_vendors.calls[2][3]
        assert "a clean neutral studio surface" in image_prompt
        assert "Immutable elements" not in image_prompt

    def test_concept_prompt_receives_raw_vision_text_on_parse_failure(self, fake_vendors):
        fake_vendors.text_replies = ["I see a red mug.", "{}"]
        result = StudioPipeline("Red Mug", b"img", keys=ALL_KEYS).run()

        concept_prompt = fake_vendors.calls[1][3]
        assert '"raw": "I see a red mug."' in concept_prompt
        assert result["concept_used"] == studio_core.DEFAULT_CONCEPT_USED

    def test_concept_failure_keeps_vision_line_item(self, fake_vendors):
        fake_vendors.text_replies = [fake_vendors.text_replies[0], VendorError("OpenAI text call failed: boom")]
        pipeline = StudioPipeline("Mug", b"img", keys=ALL_KEYS)
        with pytest.raises(VendorError):
            pipeline.run()

        row = db.get_request_log(pipeline.request_id)
        assert row["success"] is False
        assert "boom" in row["error_message"]
        assert [i["stage"] for i in row["line_items"]] == ["VISION"]

    def test_progress_events(self, fake_vendors):
        events = []
        StudioPipeline("Mug", b"img", keys=ALL_KEYS, progress_cb=events.append).run()
        assert [(e["stage"], e["status"]) for e in events] == [
            ("VISION", "started"), ("VISION", "completed"),
            ("CONCEPT", "started"), ("CONCEPT", "completed"),
            ("IMAGE_EDIT", "started"), ("IMAGE_EDIT", "completed"),
            ("pipeline", "completed"),
        ]

    def test_keys_default_to_environment(self, fake_vendors, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        result = StudioPipeline("Mug", b"img").run()
        assert result["image_base64"] == fake_vendors.image_b64

    def test_failing_progress_listener_still_closes_log_row(self, fake_vendors):
        def listener(event):
            if event["status"] == "failed":
                raise BrokenPipeError("stdout closed")

        fake_vendors.image_error = VendorError("image vendor 502")
        pipeline = StudioPipeline("Mug", b"img", keys=ALL_KEYS, progress_cb=listener)
        with pytest.raises(VendorError, match="image vendor 502"):
            pipeline.run()

        row = db.get_request_log(pipeline.request_id)
        assert row["success"] is False
        assert row["error_message"] == "image vendor 502"

    def test_progress_listener_errors_do_not_fail_the_request(self, fake_vendors):
        def listener(event):
            raise BrokenPipeError("stdout closed")

        result = StudioPipeline("Mug", b"img", keys=ALL_KEYS, progress_cb=listener).run()
        assert result["image_base64"] == fake_vendors.image_b64
        assert db.get_request_log(result["request_id"])["success"] is True

    def test_completion_write_failure_marks_row_failed(self, fake_vendors, monkeypatch):
        def broken_complete(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "complete_request_log", broken_complete)
        pipeline = StudioPipeline("Mug", b"img", keys=ALL_KEYS)
        with pytest.raises(sqlite3.OperationalError):
            pipeline.run()

        row = db.get_request_log(pipeline.request_id)
        assert row["success"] is False
        assert row["error_message"] == "database is locked"
