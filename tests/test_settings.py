from __future__ import annotations

import logging
from typing import Any

from codex_gateway.settings import Settings, get_settings


def test_unknown_reasoning_values_from_environment_are_ignored(
    monkeypatch: Any, caplog: Any
) -> None:
    monkeypatch.setenv("REASONING_EFFORT", "xhigh")
    monkeypatch.setenv("REASONING_SUMMARY", " Concise ")
    monkeypatch.setenv("REASONING_COMPAT", "newest")

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        settings = get_settings()

    assert settings.reasoning_effort is None
    assert settings.reasoning_summary == "concise"
    assert settings.reasoning_compat is None
    assert "settings_value_ignored key=REASONING_EFFORT" in caplog.text
    assert "settings_value_ignored key=REASONING_COMPAT" in caplog.text


def test_unparseable_verbose_flag_is_treated_as_off(monkeypatch: Any, caplog: Any) -> None:
    monkeypatch.setenv("VERBOSE", "loud")

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        settings = get_settings()

    assert settings.verbose is False
    assert "settings_value_ignored key=VERBOSE" in caplog.text
    assert Settings(verbose="yes").verbose is True
    assert Settings(verbose="0").verbose is False


def test_overrides_skip_empty_values_and_unknown_keys(monkeypatch: Any) -> None:
    monkeypatch.setenv("CHATGPT_RESPONSES_URL", "https://env.test/responses")

    settings = Settings.with_overrides(
        {
            "CHATGPT_RESPONSES_URL": "",
            "REASONING_EFFORT": "  ",
            "DEBUG_MODEL": "gpt-5-debug",
            "UNRELATED_KEY": "ignored",
        }
    )

    assert settings.chatgpt_responses_url == "https://env.test/responses"
    assert settings.reasoning_effort is None
    assert settings.debug_model == "gpt-5-debug"


def test_overrides_take_priority_over_environment(monkeypatch: Any) -> None:
    monkeypatch.setenv("OLLAMA_API_URL", "http://env.ollama:11434")

    settings = Settings.with_overrides({"ollama_api_url": "http://file.ollama:11434"})

    assert settings.ollama_api_url == "http://file.ollama:11434"
