from __future__ import annotations

import asyncio
import json
import random
from typing import Any, Dict, List, Sequence, Union

import aiohttp


class OpenAIRequestError(RuntimeError):
    """Non-2xx response or malformed body from an OpenAI-compatible endpoint."""


class _OpenAIHttpClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        retries: int = 1,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = (base_url or "https://api.openai.com/v1").strip().rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.retries = max(1, int(retries))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = f"{self.base_url}/{path.lstrip('/')}"
        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                async with self._session.post(url, json=payload, headers=self._headers()) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise OpenAIRequestError("OpenAI returned non-object JSON response")
                    retriable = response.status in {408, 409, 429, 500, 502, 503, 504}
                    if not retriable:
                        raise OpenAIRequestError(f"OpenAI error {response.status}: {text[:400]}")
                    last_error = OpenAIRequestError(f"OpenAI retriable error {response.status}: {text[:400]}")
            except asyncio.CancelledError:
                raise
            except OpenAIRequestError as exc:
                if "retriable" not in str(exc):
                    raise
                last_error = exc
            except Exception as exc:
                last_error = exc
            if attempt < self.retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise OpenAIRequestError(f"OpenAI request failed: {last_error}")
        raise OpenAIRequestError("OpenAI request failed without explicit error")


class OpenAIChatClient(_OpenAIHttpClient):
    """Completion capability over an OpenAI-compatible ``/chat/completions`` endpoint."""

    backend_name = "openai"

    def __init__(self, *, model: str = "gpt-4o-mini", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("OpenAI chat model cannot be empty")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise OpenAIRequestError("OpenAI returned no choices")
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str) and content.strip():
            return content.strip()
        finish_reason = choices[0].get("finish_reason")
        raise OpenAIRequestError(f"OpenAI empty response (finish_reason={finish_reason})")

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": str(prompt or "")}],
            "temperature": float(temperature),
        }
        if int(max_tokens) > 0:
            payload["max_tokens"] = int(max_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._request("chat/completions", payload)
        return self._extract_text(data)


class OpenAIEmbeddingClient(_OpenAIHttpClient):
    """Embedding capability over an OpenAI-compatible ``/embeddings`` endpoint."""

    backend_name = "openai"

    def __init__(self, *, model: str = "text-embedding-3-small", dimension: int = 1536, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("OpenAI embedding model cannot be empty")
        self.dimension = int(dimension)

    @staticmethod
    def _extract_vectors(data: Dict[str, Any], expected: int) -> List[List[float]]:
        rows = data.get("data")
        if not isinstance(rows, list) or len(rows) != expected:
            raise OpenAIRequestError("OpenAI embeddings response has unexpected shape")
        ordered = sorted(
            (row for row in rows if isinstance(row, dict)),
            key=lambda row: int(row.get("index", 0)),
        )
        vectors: List[List[float]] = []
        for row in ordered:
            embedding = row.get("embedding")
            if not isinstance(embedding, list) or not embedding:
                raise OpenAIRequestError("OpenAI embeddings response contains an empty vector")
            vectors.append([float(x) for x in embedding])
        if len(vectors) != expected:
            raise OpenAIRequestError("OpenAI embeddings response has unexpected shape")
        return vectors

    async def embed(self, text: Union[str, Sequence[str]]) -> Union[List[float], List[List[float]]]:
        single = isinstance(text, str)
        inputs = [text] if single else [str(x) for x in text]
        if not inputs:
            return []
        payload: Dict[str, Any] = {"model": self.model, "input": inputs}
        data = await self._request("embeddings", payload)
        vectors = self._extract_vectors(data, len(inputs))
        return vectors[0] if single else vectors
