from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Any

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.config import Settings  # noqa: E402
from companion_memory.services.openai_client import (  # noqa: E402
    OpenAIChatClient,
    OpenAIEmbeddingClient,
    OpenAIRequestError,
)


_ENV_KEYS = (
    "OPENAI_API_KEY",
    "OPENAI_CHAT_MODEL",
    "MEMORY_EXTRACTION_MODEL",
    "EMBEDDING_DIMENSION",
    "MEMORY_POSTGRES_DSN",
    "DATABASE_URL",
    "CHARACTER_IDS",
    "SUMMARY_EVERY_N_TURNS",
    "MEMORY_FACT_LIST_LIMIT",
    "LOG_LEVEL",
)


def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _clean_env(monkeypatch)

    settings = Settings.from_env()
    settings.validate()

    assert settings.embedding_dimension == 1536
    assert settings.summary_every_n_turns == 10
    assert settings.fact_list_limit == 15
    assert len(settings.character_ids) == 25
    assert settings.remote_enabled is False
    assert settings.llm_enabled is False


def test_settings_read_env_overrides_and_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    _clean_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("MEMORY_EXTRACTION_MODEL", "gpt-4.1-mini")
    monkeypatch.setenv("DATABASE_URL", "postgresql://memory@localhost/memory")
    monkeypatch.setenv("CHARACTER_IDS", "Alice, bobo ,ALICE,")
    monkeypatch.setenv("MEMORY_FACT_LIST_LIMIT", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()
    settings.validate()

    assert settings.llm_enabled is True
    assert settings.openai_chat_model == "gpt-4.1-mini"
    assert settings.remote_enabled is True
    assert settings.character_ids == ("alice", "bobo")
    assert settings.fact_list_limit == 15
    assert settings.log_level == "DEBUG"


def test_placeholder_api_key_disables_llm(monkeypatch: pytest.MonkeyPatch) -> None:
    _clean_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "put_your_openai_api_key_here")

    assert Settings.from_env().llm_enabled is False


def test_validate_names_the_offending_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    _clean_env(monkeypatch)
    settings = Settings.from_env()

    with pytest.raises(ValueError, match="SUMMARY_EVERY_N_TURNS"):
        dataclasses.replace(settings, summary_every_n_turns=1).validate()
    with pytest.raises(ValueError, match="MEMORY_FACT_MERGE_WEIGHT"):
        dataclasses.replace(settings, fact_merge_weight=1.5).validate()
    with pytest.raises(ValueError, match="RELATIONSHIP_CASUAL_THRESHOLD"):
        dataclasses.replace(settings, relationship_casual_threshold=80.0).validate()


def test_chat_client_builds_json_mode_payload() -> None:
    client = OpenAIChatClient(api_key="sk-test", model="gpt-4o-mini")
    captured: dict[str, Any] = {}

    async def fake_request(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        captured["path"] = path
        captured["payload"] = payload
        return {"choices": [{"message": {"content": '  {"longTerm": []}  '}, "finish_reason": "stop"}]}

    client._request = fake_request  # type: ignore[method-assign]

    result = asyncio.run(client.complete("extract please", temperature=0.3, max_tokens=500, json_mode=True))

    assert result == '{"longTerm": []}'
    assert captured["path"] == "chat/completions"
    assert captured["payload"]["response_format"] == {"type": "json_object"}
    assert captured["payload"]["messages"] == [{"role": "system", "content": "extract please"}]
    assert captured["payload"]["max_tokens"] == 500
    assert client._headers()["Authorization"] == "Bearer sk-test"


def test_chat_client_raises_on_empty_choice() -> None:
    client = OpenAIChatClient(api_key="sk-test")

    async def fake_request(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {"choices": [{"message": {"content": ""}, "finish_reason": "length"}]}

    client._request = fake_request  # type: ignore[method-assign]

    with pytest.raises(OpenAIRequestError, match="finish_reason=length"):
        asyncio.run(client.complete("hi"))


def test_embedding_client_orders_vectors_by_index() -> None:
    client = OpenAIEmbeddingClient(api_key="sk-test", dimension=2)
    payloads: list[dict[str, Any]] = []

    async def fake_request(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        payloads.append(payload)
        count = len(payload["input"])
        rows = [{"index": i, "embedding": [float(i), float(i) + 0.5]} for i in range(count)]
        return {"data": list(reversed(rows))}

    client._request = fake_request  # type: ignore[method-assign]

    batch = asyncio.run(client.embed(["first", "second"]))
    single = asyncio.run(client.embed("only"))

    assert batch == [[0.0, 0.5], [1.0, 1.5]]
    assert single == [0.0, 0.5]
    assert payloads[0] == {"model": "text-embedding-3-small", "input": ["first", "second"]}


def test_embedding_client_rejects_short_response() -> None:
    client = OpenAIEmbeddingClient(api_key="sk-test")

    async def fake_request(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {"data": []}

    client._request = fake_request  # type: ignore[method-assign]

    with pytest.raises(OpenAIRequestError):
        asyncio.run(client.embed(["a", "b"]))
