import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from .catalog import ModelCatalog, resolve_model
from .chunker import CHUNK_LIMIT, ReplyChunk, ReplyMetadata, to_chunks
from .config import DEFAULT_SYSTEM_PROMPT
from .context import (
    MAX_REPLY_DEPTH,
    THREAD_HISTORY_LIMIT,
    ContextBuilder,
    MessageNode,
    MessageSource,
    TurnFormatter,
)
from .models import ConversationTurn, GenerationResult, Model, User
from .preferences import PreferenceStore
from .router import Router

log = logging.getLogger(__name__)

NO_MODEL_REPLY = "No suitable model found. Please try again later."
EMPTY_CONTEXT_REPLY = "Please provide some context."
FAILURE_REPLY = "Sorry, I encountered an error while processing your request. Please try again."
EMPTY_REPLY = "The model returned an empty response. Please try again."

TITLE_MAX_CHARS = 100


def dedent(text: str) -> str:
    return "\n".join(line.strip() for line in text.split("\n"))


TITLE_PROMPT = dedent(
    """You are a youtube video title generator.
    Generate a concise title for the following conversation.
    Please be as brief as possible, ideally only a couple words.
    Do not make it longer than 100 characters."""
)


class Outcome(enum.Enum):
    OK = "ok"
    NO_MODEL = "no_model"
    EMPTY_CONTEXT = "empty_context"
    GENERATION_FAILED = "generation_failed"
    EMPTY_REPLY = "empty_reply"


@dataclass
class AssistantResponse:
    outcome: Outcome
    text: str = ""
    chunks: List[ReplyChunk] = field(default_factory=list)
    turns: List[ConversationTurn] = field(default_factory=list)
    result: Optional[GenerationResult] = None
    user: Optional[User] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


class Assistant:
    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        router: Router,
        preferences: PreferenceStore,
        default_model: Optional[str] = None,
        default_prompt: Optional[str] = None,
        max_reply_depth: int = MAX_REPLY_DEPTH,
        thread_history_limit: int = THREAD_HISTORY_LIMIT,
        chunk_limit: int = CHUNK_LIMIT,
    ):
        self.catalog = catalog
        self.router = router
        self.preferences = preferences
        self.default_model = default_model
        self.default_prompt = default_prompt
        self.max_reply_depth = max_reply_depth
        self.thread_history_limit = thread_history_limit
        self.chunk_limit = chunk_limit

    # ----- users -----

    def get_user(self, user_id: str) -> User:
        stored = self.preferences.get(user_id)
        model = resolve_model(self.catalog.current_models(), stored.model, self.default_model)
        if stored.system:
            system = dedent(stored.system)
        elif self.default_prompt:
            system = dedent(self.default_prompt)
        else:
            system = DEFAULT_SYSTEM_PROMPT
        return User(id=str(user_id), model=model, system_prompt=system)

    def select_model(self, user_id: str, model_id: str) -> Optional[Model]:
        model = self.catalog.get(model_id)
        if model is None:
            return None
        self.preferences.set(user_id, model=model.id)
        return model

    def set_system_prompt(self, user_id: str, prompt: str) -> None:
        self.preferences.set(user_id, system=prompt)

    def reset(self, user_id: str) -> None:
        self.preferences.delete(user_id)

    # ----- responding -----

    def formatter_for(self, user: User, agent_name: str) -> TurnFormatter:
        modalities = user.model.input_modalities if user.model else ("text",)
        return TurnFormatter(agent_name=agent_name, modalities=modalities)

    async def build_context(
        self,
        user: User,
        leaf: MessageNode,
        source: MessageSource,
        *,
        agent_name: str,
    ) -> List[ConversationTurn]:
        builder = ContextBuilder(
            source,
            max_depth=self.max_reply_depth,
            thread_limit=self.thread_history_limit,
        )
        return await builder.build(leaf, self.formatter_for(user, agent_name))

    def metadata_for(self, result: GenerationResult) -> ReplyMetadata:
        model = self.catalog.get(result.model_id)
        return ReplyMetadata(
            model_name=model.name if model else None,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    async def handle_message(
        self,
        leaf: MessageNode,
        source: MessageSource,
        *,
        user_id: str,
        agent_name: str,
    ) -> AssistantResponse:
        user = self.get_user(user_id)
        if user.model is None:
            log.warning("no model available for %s", user_id)
            return AssistantResponse(Outcome.NO_MODEL, text=NO_MODEL_REPLY, user=user)
        log.info("responding to %s with %s", user_id, user.model.id)

        turns = await self.build_context(user, leaf, source, agent_name=agent_name)
        if not turns:
            return AssistantResponse(
                Outcome.EMPTY_CONTEXT, text=EMPTY_CONTEXT_REPLY, user=user
            )
        for turn in turns:
            log.debug("%s: %s", turn.role, turn.content)

        result = await self.router.generate(user, turns)
        if result is None:
            return AssistantResponse(
                Outcome.GENERATION_FAILED, text=FAILURE_REPLY, turns=turns, user=user
            )
        if not result.text.strip():
            log.warning("%s returned no visible text", result.model_id)
            return AssistantResponse(
                Outcome.EMPTY_REPLY, text=EMPTY_REPLY, turns=turns, result=result, user=user
            )

        chunks = to_chunks(result.text, self.metadata_for(result), limit=self.chunk_limit)
        return AssistantResponse(
            Outcome.OK, chunks=chunks, turns=turns, result=result, user=user
        )

    async def suggest_thread_title(
        self, user: User, turns: Sequence[ConversationTurn]
    ) -> Optional[str]:
        if not turns:
            return None
        result = await self.router.generate(user, turns, system=TITLE_PROMPT)
        if result is None:
            return None
        title = " ".join(result.text.split())[:TITLE_MAX_CHARS]
        return title or None

    # ----- info -----

    def describe_model(self, user: User) -> Optional[str]:
        model = user.model
        if model is None:
            return None
        created = datetime.fromtimestamp(model.created).strftime("%Y-%m-%d %H:%M")
        system = re.sub(r"[\r\n]+", " ", user.system_prompt or "") or "not set"
        lines = [
            f"**{model.name}**",
            f"-# last updated: {created}",
            f"-# context: {model.context_length:,} tokens",
            (
                f"-# price: ${model.pricing.prompt * 1_000_000:.2f}/M input tokens, "
                f"${model.pricing.completion * 1_000_000:.2f}/M output tokens"
            ),
            (
                f"-# modality: {', '.join(model.input_modalities)} -> "
                f"{', '.join(model.output_modalities)}"
            ),
            model.description,
            "",
            "**System Prompt**",
            system,
        ]
        return "\n".join(lines)
