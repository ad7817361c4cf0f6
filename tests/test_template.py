"""Tests for template rendering and the variable context."""

import pytest

from prompt_chain.pipelines import VariableContext, extract_variables, render


class TestRender:

    def test_substitutes_known_placeholders(self):
        assert render("Hello {{name}}, meet {{other}}", {"name": "Ada", "other": "Bob"}) == (
            "Hello Ada, meet Bob"
        )

    @pytest.mark.parametrize("text", ["", "plain text", "{single} braces", "{{ spaced }}"])
    def test_text_without_placeholders_is_unchanged(self, text):
        assert render(text, {"single": "x", "spaced": "y"}) == text

    def test_unknown_placeholder_left_untouched(self):
        assert render("Hi {{name}} and {{ghost}}", {"name": "Ada"}) == "Hi Ada and {{ghost}}"

    def test_values_are_not_rendered_again(self):
        assert render("{{a}}", {"a": "{{b}}", "b": "nope"}) == "{{b}}"

    def test_spaced_placeholders_are_not_placeholders(self):
        assert render("{{ name }}", {"name": "Ada"}) == "{{ name }}"

    def test_extract_variables(self):
        assert extract_variables("{{a}} {{b}} {{a}} {c}") == {"a", "b"}


class TestVariableContext:

    def test_with_value_returns_new_context(self):
        original = VariableContext({"a": "1"})

        updated = original.with_value("b", "2")

        assert dict(original) == {"a": "1"}
        assert dict(updated) == {"a": "1", "b": "2"}

    def test_with_values_overrides(self):
        context = VariableContext({"a": "1", "b": "2"}).with_values({"b": "3"})

        assert context.to_dict() == {"a": "1", "b": "3"}

    def test_is_read_only(self):
        context = VariableContext({"a": "1"})

        with pytest.raises(TypeError):
            context["a"] = "2"

    def test_to_dict_is_a_copy(self):
        context = VariableContext({"a": "1"})
        snapshot = context.to_dict()
        snapshot["a"] = "changed"

        assert context["a"] == "1"
