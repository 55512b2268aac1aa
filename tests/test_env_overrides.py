from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from codex_gateway.env_overrides import (
    EnvOverrideLoader,
    get_env_overrides_loader,
    parse_env_content,
)


def test_parse_env_content_handles_comments_and_quotes() -> None:
    content = "\n".join(
        [
            "# local overrides",
            "",
            "CHATGPT_ACCESS_TOKEN=abc123",
            'CODEX_INSTRUCTIONS="line one\\nline two"',
            "DEBUG_MODEL='gpt-5\\nraw'",
            "EMPTY=",
            "   SPACED_KEY =  spaced value  ",
            "not a pair",
        ]
    )

    overrides = parse_env_content(content)

    assert overrides == {
        "CHATGPT_ACCESS_TOKEN": "abc123",
        "CODEX_INSTRUCTIONS": "line one\nline two",
        "DEBUG_MODEL": "gpt-5\\nraw",
        "EMPTY": "",
        "SPACED_KEY": "spaced value",
    }


def test_parse_env_content_later_keys_win() -> None:
    overrides = parse_env_content("VERBOSE=false\nVERBOSE=true\n")
    assert overrides == {"VERBOSE": "true"}


def test_missing_file_yields_none_without_warning(tmp_path: Path, caplog: Any) -> None:
    loader = EnvOverrideLoader(tmp_path / "missing.env")
    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        assert asyncio.run(loader.get_overrides()) is None
    assert "env_overrides" not in caplog.text


def test_concurrent_callers_share_a_single_load(tmp_path: Path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("OLLAMA_API_URL=http://ollama.local:11434\n", encoding="utf-8")
    loader = EnvOverrideLoader(env_path)

    async def scenario() -> list[dict[str, str] | None]:
        return await asyncio.gather(*(loader.get_overrides() for _ in range(10)))

    results = asyncio.run(scenario())

    assert all(result == {"OLLAMA_API_URL": "http://ollama.local:11434"} for result in results)
    assert loader.load_attempts == 1

    # Later callers reuse the memoized result even after the file changes.
    env_path.write_text("OLLAMA_API_URL=http://other\n", encoding="utf-8")
    assert asyncio.run(loader.get_overrides()) == {
        "OLLAMA_API_URL": "http://ollama.local:11434"
    }
    assert loader.load_attempts == 1


def test_unreadable_file_logs_one_warning(tmp_path: Path, caplog: Any) -> None:
    # A directory cannot be read as a file.
    loader = EnvOverrideLoader(tmp_path)

    async def scenario() -> list[dict[str, str] | None]:
        first = await asyncio.gather(*(loader.get_overrides() for _ in range(3)))
        second = await loader.get_overrides()
        return [*first, second]

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        results = asyncio.run(scenario())

    assert results == [None, None, None, None]
    warnings = [
        record
        for record in caplog.records
        if "env_overrides_load_failed" in record.getMessage()
    ]
    assert len(warnings) == 1


def test_success_is_logged_once(tmp_path: Path, caplog: Any) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("VERBOSE=true\n", encoding="utf-8")
    loader = EnvOverrideLoader(env_path)

    async def scenario() -> None:
        await asyncio.gather(*(loader.get_overrides() for _ in range(5)))
        await loader.get_overrides()

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        asyncio.run(scenario())

    loaded = [
        record for record in caplog.records if "env_overrides_loaded" in record.getMessage()
    ]
    assert len(loaded) == 1


def test_default_loader_is_process_wide(tmp_path: Path) -> None:
    first = get_env_overrides_loader(tmp_path / "a.env")
    second = get_env_overrides_loader(tmp_path / "b.env")
    assert first is second
    assert first.path == tmp_path / "a.env"
