import pytest

from gemini_proxy.core.errors import ValidationError
from gemini_proxy.models.api_models import TextPart
from gemini_proxy.services.requests import (
    MAX_TEXT_LENGTH,
    coerce_history_entry,
    normalize,
    normalize_generation_options,
    normalize_system_instruction,
    sanitize_text,
    split_legacy_messages,
)


class TestSanitizeText:
    def test_strips_brackets_and_collapses_whitespace(self):
        assert sanitize_text("  <b>Hello</b>   {world}\n\n[x] ") == "bHello/b world x"

    def test_non_string_becomes_empty(self):
        assert sanitize_text(None) == ""
        assert sanitize_text(42) == ""
        assert sanitize_text({"text": "hi"}) == ""

    @pytest.mark.parametrize("raw", [
        "a <",
        "  spaced   out  ",
        "x [ ] y",
        "tabs\tand\nnewlines\r\n",
        "{" * 10 + "z",
        "a" * (MAX_TEXT_LENGTH - 1) + " b c",
        "emoji 👍🏽 ok",
    ])
    def test_is_idempotent(self, raw):
        once = sanitize_text(raw)
        assert sanitize_text(once) == once

    def test_truncates_to_exact_bound(self):
        assert len(sanitize_text("x" * (MAX_TEXT_LENGTH + 500))) == MAX_TEXT_LENGTH

    def test_truncated_text_stays_encodable(self):
        text = sanitize_text("é" * 3999 + "😀" * 10 + "\ud800")
        assert len(text) == MAX_TEXT_LENGTH
        text.encode("utf-8")

    def test_removes_lone_surrogates(self):
        assert sanitize_text("ok\udc00done") == "okdone"


class TestCoerceHistoryEntry:
    def test_entry_without_parts_or_text_gets_single_empty_part(self):
        assert coerce_history_entry({"role": "user"}) == ("user", [TextPart(text="")])
        assert coerce_history_entry({}) == ("user", [TextPart(text="")])
        assert coerce_history_entry("not a dict") == ("user", [TextPart(text="")])

    def test_parts_non_string_text_defaults_to_empty(self):
        role, parts = coerce_history_entry({"role": "model", "parts": [{"text": 5}, {"text": "fine"}, None]})
        assert role == "model"
        assert [p.text for p in parts] == ["", "fine", ""]

    def test_legacy_flat_text_and_content_fields(self):
        assert coerce_history_entry({"role": "assistant", "text": "hi"}) == ("model", [TextPart(text="hi")])
        assert coerce_history_entry({"role": "user", "content": " yo "}) == ("user", [TextPart(text="yo")])

    @pytest.mark.parametrize("raw_role, expected", [
        ("user", "user"),
        ("assistant", "model"),
        ("model", "model"),
        ("SYSTEM", "system"),
        ("tool", "user"),
        (None, "user"),
        (7, "user"),
    ])
    def test_role_coercion(self, raw_role, expected):
        role, _ = coerce_history_entry({"role": raw_role, "text": "x"})
        assert role == expected


class TestNormalize:
    @pytest.mark.parametrize("prompt", [None, "", "   \n\t", 123, ["hi"], "[]{}<>"])
    def test_rejects_missing_or_blank_prompt(self, prompt):
        with pytest.raises(ValidationError):
            normalize([], prompt)

    def test_preserves_order_and_appends_one_user_turn(self):
        history = [
            {"role": "user", "parts": [{"text": "first"}]},
            {"role": "assistant", "parts": [{"text": "second"}]},
            {"role": "user", "text": "third"},
        ]
        messages, system_instruction = normalize(history, "  Give me <one> tactic  ")

        assert [m.role for m in messages] == ["user", "model", "user", "user"]
        assert [m.text for m in messages] == ["first", "second", "third", "Give me one tactic"]
        assert messages[-1].parts == [TextPart(text="Give me one tactic")]
        assert system_instruction is None

    def test_non_list_history_is_treated_as_empty(self):
        messages, _ = normalize({"role": "user"}, "hello")
        assert len(messages) == 1
        assert messages[0].text == "hello"

    def test_empty_turns_are_dropped_by_default(self):
        history = [{"role": "user"}, {"role": "model", "parts": [{"text": "[ ]"}]}, {"role": "model", "text": "kept"}]
        messages, _ = normalize(history, "next")
        assert [m.text for m in messages] == ["kept", "next"]

    def test_empty_turns_kept_when_requested(self):
        messages, _ = normalize([{"role": "user"}], "next", drop_empty_turns=False)
        assert messages[0].parts == [TextPart(text="")]
        assert len(messages) == 2

    def test_empty_parts_removed_inside_kept_turn(self):
        messages, _ = normalize([{"role": "model", "parts": [{"text": ""}, {"text": "a"}]}], "b")
        assert messages[0].parts == [TextPart(text="a")]

    def test_system_history_entries_move_to_system_channel(self):
        history = [
            {"role": "system", "content": "Be concise."},
            {"role": "user", "text": "hi"},
        ]
        messages, system_instruction = normalize(history, "go", {"parts": [{"text": "You are a growth advisor."}]})

        assert all(m.role in ("user", "model") for m in messages)
        assert [m.text for m in messages] == ["hi", "go"]
        assert system_instruction == "You are a growth advisor.\n\nBe concise."


class TestSystemInstruction:
    @pytest.mark.parametrize("raw, expected", [
        (None, None),
        ("", None),
        ("   ", None),
        ("Be brief", "Be brief"),
        ({"text": "Be brief"}, "Be brief"),
        ({"parts": [{"text": "Be"}, {"text": "brief"}]}, "Be brief"),
        ([{"text": "Be brief"}], "Be brief"),
        ({"parts": []}, None),
        (12, None),
    ])
    def test_forms(self, raw, expected):
        assert normalize_system_instruction(raw) == expected


class TestLegacyMessages:
    def test_last_user_turn_becomes_prompt(self):
        raw = [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        history, prompt = split_legacy_messages(raw)
        assert prompt == "q2"
        assert history == raw[:3]

    def test_trailing_assistant_turn_yields_no_prompt(self):
        history, prompt = split_legacy_messages([{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}])
        assert prompt is None
        assert len(history) == 2

    def test_not_a_list(self):
        assert split_legacy_messages("nope") == ([], None)


class TestGenerationOptions:
    @pytest.mark.parametrize("raw, expected", [
        (None, 0.7),
        (0.2, 0.2),
        (-3, 0.0),
        (1.8, 1.0),
        (True, 0.7),
        ("0.3", 0.7),
    ])
    def test_temperature_is_clamped(self, raw, expected):
        assert normalize_generation_options(raw, None).temperature == expected

    @pytest.mark.parametrize("raw, expected", [
        (None, 1024),
        (256, 256),
        (0, 1024),
        (-5, 1024),
        (10 ** 9, 8192),
        (300.7, 300),
    ])
    def test_max_tokens_is_bounded(self, raw, expected):
        assert normalize_generation_options(None, raw).max_output_tokens == expected

    def test_sampling_parameters_are_fixed(self):
        options = normalize_generation_options(0.5, 100)
        assert (options.top_k, options.top_p) == (40, 0.95)
