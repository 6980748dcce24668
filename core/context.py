import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from .chunker import strip_footer
from .models import ContentPart, ConversationTurn, FilePart, ImagePart, TextPart

log = logging.getLogger(__name__)

MAX_REPLY_DEPTH = 50
THREAD_HISTORY_LIMIT = 100

_LINE_BREAKS = re.compile(r"[\r\n]+")


class ThreadKind(enum.Enum):
    NONE = "none"
    PUBLIC = "public"
    PRIVATE = "private"


@dataclass(frozen=True)
class Embed:
    author_name: str = ""
    title: str = ""
    description: str = ""


@dataclass(frozen=True)
class Attachment:
    url: str
    filename: str
    content_type: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("image/"))


@dataclass(frozen=True)
class MessageNode:
    id: str
    author_id: str
    from_agent: bool
    text: str
    embeds: Tuple[Embed, ...] = ()
    attachments: Tuple[Attachment, ...] = ()
    thread: ThreadKind = ThreadKind.NONE
    reply_to_id: Optional[str] = None


class MessageSource(Protocol):
    async def fetch_reply_target(self, node: MessageNode) -> Optional[MessageNode]:
        ...

    async def fetch_thread_history(self, node: MessageNode, limit: int) -> List[MessageNode]:
        """Most recent ``limit`` messages of the node's thread, oldest first."""
        ...


TurnFormatterFn = Callable[[MessageNode], Optional[ConversationTurn]]


def format_embed(embed: Embed) -> str:
    text = ""
    if embed.author_name:
        text += f"{embed.author_name}:\n"
    if embed.title:
        text += f"{embed.title}\n"
    if embed.description:
        text += f"{embed.description}\n"
    # Discord escapes periods inside embed markdown.
    text = text.replace("\\.", ".")
    return _LINE_BREAKS.sub(" ", text.strip())


@dataclass
class TurnFormatter:
    """Normalizes one message into a turn for a model with the given input modalities."""

    agent_name: str
    modalities: Iterable[str] = field(default_factory=lambda: ("text",))

    def __post_init__(self) -> None:
        self.modalities = frozenset(self.modalities)

    def clean_text(self, raw: str) -> str:
        if self.agent_name:
            raw = raw.replace(f"@{self.agent_name}", "", 1)
        return raw.strip()

    def __call__(self, node: MessageNode) -> Optional[ConversationTurn]:
        raw = node.text or ""
        if node.from_agent:
            raw = strip_footer(raw)
        text = self.clean_text(raw)

        if node.from_agent:
            if not text:
                return None
            log.debug("- assistant: %s", text)
            return ConversationTurn(role="assistant", content=(TextPart(text),))

        parts: List[ContentPart] = []
        if text:
            log.debug("- user: %s", text)
            parts.append(TextPart(text))

        for embed in node.embeds:
            embed_text = format_embed(embed)
            if embed_text:
                log.debug("- user: embed %s", embed_text)
                parts.append(TextPart(f'"{embed_text}"'))

        if "image" in self.modalities:
            for attachment in node.attachments:
                if attachment.is_image:
                    log.debug("- user: image %s", attachment.url)
                    parts.append(ImagePart(attachment.url))

        if "file" in self.modalities:
            for attachment in node.attachments:
                if attachment.content_type and not attachment.is_image:
                    log.debug("- user: file %s", attachment.url)
                    parts.append(
                        FilePart(
                            url=attachment.url,
                            filename=attachment.filename,
                            media_type=attachment.content_type,
                        )
                    )

        if not parts:
            return None
        return ConversationTurn(role="user", content=tuple(parts))


class ContextBuilder:
    def __init__(
        self,
        source: MessageSource,
        *,
        max_depth: int = MAX_REPLY_DEPTH,
        thread_limit: int = THREAD_HISTORY_LIMIT,
    ) -> None:
        self.source = source
        self.max_depth = max(0, max_depth)
        self.thread_limit = thread_limit

    async def build(self, leaf: MessageNode, formatter: TurnFormatterFn) -> List[ConversationTurn]:
        return await self._collect(leaf, formatter, depth=0)

    async def _collect(
        self, node: MessageNode, formatter: TurnFormatterFn, *, depth: int
    ) -> List[ConversationTurn]:
        if node.thread is not ThreadKind.NONE:
            return await self._thread_context(node, formatter)

        turns: List[ConversationTurn] = []
        if node.reply_to_id:
            if depth >= self.max_depth:
                log.info("reply chain truncated at depth %d (message %s)", depth, node.id)
            else:
                parent = await self.source.fetch_reply_target(node)
                if parent is not None:
                    turns = await self._collect(parent, formatter, depth=depth + 1)

        turn = formatter(node)
        if turn is not None:
            turns.append(turn)
        return turns

    async def _thread_context(
        self, node: MessageNode, formatter: TurnFormatterFn
    ) -> List[ConversationTurn]:
        history = await self.source.fetch_thread_history(node, self.thread_limit)
        turns: List[ConversationTurn] = []
        for message in history:
            turn = formatter(message)
            if turn is not None:
                turns.append(turn)
        return turns
