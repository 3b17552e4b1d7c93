from .memory import (
    FALLBACK_REPLY,
    build_memory_extraction_prompt,
    build_summary_prompt,
    format_transcript,
)

__all__ = [
    "FALLBACK_REPLY",
    "build_memory_extraction_prompt",
    "build_summary_prompt",
    "format_transcript",
]
