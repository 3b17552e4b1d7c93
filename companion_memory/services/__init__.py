from .openai_client import OpenAIChatClient, OpenAIEmbeddingClient, OpenAIRequestError
from .protocols import CompletionBackend, EmbeddingBackend

__all__ = [
    "CompletionBackend",
    "EmbeddingBackend",
    "OpenAIChatClient",
    "OpenAIEmbeddingClient",
    "OpenAIRequestError",
]
