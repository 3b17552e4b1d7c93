from __future__ import annotations

from typing import List, Protocol, Sequence, Union


Vector = List[float]


class CompletionBackend(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> str: ...


class EmbeddingBackend(Protocol):
    async def embed(self, text: Union[str, Sequence[str]]) -> Union[Vector, List[Vector]]: ...
