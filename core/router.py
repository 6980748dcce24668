import logging
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from .catalog import ModelCatalog
from .models import ConversationTurn, FilePart, GenerationResult, ImagePart, TextPart, User

log = logging.getLogger(__name__)

THINK_CLOSE = "</think>"


def strip_thinking(raw: str) -> str:
    """Drop reasoning that precedes the final closing think tag."""

    if THINK_CLOSE in raw:
        raw = raw.rsplit(THINK_CLOSE, 1)[1]
    return raw.strip()


def to_chat_message(turn: ConversationTurn) -> Dict[str, Any]:
    if turn.role == "assistant":
        return {"role": "assistant", "content": turn.text}
    content: List[Dict[str, Any]] = []
    for part in turn.content:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "image_url", "image_url": {"url": part.url}})
        elif isinstance(part, FilePart):
            content.append(
                {
                    "type": "file",
                    "file": {"filename": part.filename, "file_data": part.url},
                }
            )
    return {"role": "user", "content": content}


class Router:
    def __init__(self, client: AsyncOpenAI, catalog: ModelCatalog) -> None:
        self.client = client
        self.catalog = catalog

    async def generate(
        self,
        user: User,
        turns: Sequence[ConversationTurn],
        *,
        system: Optional[str] = None,
    ) -> Optional[GenerationResult]:
        if user.model is None:
            return None
        model_id = user.model.id
        system_prompt = system if system is not None else (user.system_prompt or "")
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(to_chat_message(turn) for turn in turns)
        try:
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=messages,
            )
            raw = response.choices[0].message.content or ""
        except Exception as exc:
            log.exception("generation failed with %s: %s", model_id, exc)
            log.warning("blacklisting model %s", model_id)
            self.catalog.blacklist(model_id)
            return None
        usage = getattr(response, "usage", None)
        return GenerationResult(
            text=strip_thinking(raw),
            model_id=getattr(response, "model", None) or model_id,
            input_tokens=getattr(usage, "prompt_tokens", None),
            output_tokens=getattr(usage, "completion_tokens", None),
        )
