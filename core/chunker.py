from dataclasses import dataclass
from typing import List, Optional

# Discord caps messages at 2000 characters; the rest is headroom for the footer.
CHUNK_LIMIT = 1800
FOOTER_MARKER = "\n-# "


@dataclass(frozen=True)
class ReplyMetadata:
    model_name: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def footer(self) -> str:
        items: List[str] = []
        if self.model_name:
            items.append(self.model_name)
        if self.input_tokens:
            items.append(f"{self.input_tokens:,} input tokens")
        if self.output_tokens:
            items.append(f"{self.output_tokens:,} output tokens")
        return " - ".join(items)


@dataclass(frozen=True)
class ReplyChunk:
    body: str
    footer: str = ""
    final: bool = False

    def render(self) -> str:
        if not self.footer:
            return self.body
        return f"{self.body}{FOOTER_MARKER}{self.footer}"


def strip_footer(text: str) -> str:
    """Drop a trailing footer line left on a delivered final chunk."""

    body, marker, footer = text.rpartition(FOOTER_MARKER)
    if not marker or "\n" in footer:
        return text
    return body


def split_point(text: str, limit: int) -> int:
    """Index where the first chunk ends: the last newline before ``limit``, else ``limit``."""

    index = text.rfind("\n", 0, limit)
    return index if index > 0 else limit


def to_chunks(
    text: str,
    metadata: Optional[ReplyMetadata] = None,
    *,
    limit: int = CHUNK_LIMIT,
) -> List[ReplyChunk]:
    if limit <= 0:
        raise ValueError("chunk limit must be positive")
    chunks: List[ReplyChunk] = []
    remaining = text
    while len(remaining) > limit:
        index = split_point(remaining, limit)
        chunks.append(ReplyChunk(body=remaining[:index]))
        remaining = remaining[index:]
    footer = metadata.footer() if metadata else ""
    chunks.append(ReplyChunk(body=remaining, footer=footer, final=True))
    return chunks
