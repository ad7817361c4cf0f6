"""
Template rendering for step prompts.

Placeholders are bare words in double braces (``{{name}}``). A placeholder
whose name is not in the context is left untouched.
"""

from __future__ import annotations

import re
from typing import Mapping, Set

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def render(template: str, context: Mapping[str, str]) -> str:
    """Replace every resolvable placeholder with its context value."""

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name in context:
            return str(context[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


def extract_variables(template: str) -> Set[str]:
    """Names of all placeholders in a template."""
    return set(PLACEHOLDER_PATTERN.findall(template))
