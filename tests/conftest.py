"""Pytest configuration and fixtures."""
import os
from typing import List, Optional

import pytest

# Set test environment variables
os.environ["PROMPT_CHAIN_ENV"] = "test"
os.environ["PROMPT_CHAIN_LOG_JSON"] = "false"
os.environ["PROMPT_CHAIN_RETRY_BACKOFF_BASE_S"] = "0"

from prompt_chain.config import Settings, reset_settings  # noqa: E402
from prompt_chain.pipelines import Pipeline, load_pipeline_from_dict  # noqa: E402


class FakeCompletionClient:
    """Completion client that records prompts and replays scripted replies."""

    def __init__(self, replies=None, fail_times: int = 0, error: Optional[Exception] = None):
        """
        Args:
            replies: A list of replies (consumed in order; the last repeats)
                or a callable taking the prompt
            fail_times: Number of initial calls that raise ``error``
            error: Exception raised while failing (default RuntimeError)
        """
        self.replies = replies
        self.fail_times = fail_times
        self.error = error or RuntimeError("completion service unavailable")
        self.calls: List[dict] = []

    def complete(self, prompt, model, max_tokens, temperature=None):
        self.calls.append({
            "prompt": prompt,
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if len(self.calls) <= self.fail_times:
            raise self.error
        if callable(self.replies):
            return self.replies(prompt)
        if self.replies:
            index = min(len(self.calls) - self.fail_times - 1, len(self.replies) - 1)
            return self.replies[index]
        return f"completion for: {prompt}"

    @property
    def prompts(self) -> List[str]:
        return [c["prompt"] for c in self.calls]


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Drop cached settings around every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(retry_backoff_base_s=0, retry_backoff_max_s=0)


@pytest.fixture
def fake_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def make_pipeline():
    """Build a Pipeline from document-style keyword arguments."""

    def _make(steps, **fields) -> Pipeline:
        data = {"name": fields.pop("name", "test-pipeline"), "steps": steps}
        data.update(fields)
        return load_pipeline_from_dict(data)

    return _make


@pytest.fixture
def sample_pipeline_yaml() -> str:
    return """\
name: review-chain
description: Summarize then critique
version: 1.2.0
variables:
  topic: caching
steps:
  - name: summarize
    prompt: "Summarize {{topic}}"
    output: summary
    maxTokens: 500
  - name: critique
    prompt: "Critique this summary: {{summary}}"
    input: $summary
    output: critique
    temperature: 0.3
onError: continue
maxRetries: 2
"""
