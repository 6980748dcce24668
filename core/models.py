import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

log = logging.getLogger(__name__)


def _price(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        log.debug("unparsable price %r treated as 0", value)
        return 0.0


@dataclass(frozen=True)
class Pricing:
    prompt: float = 0.0
    completion: float = 0.0
    image: float = 0.0

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "Pricing":
        payload = payload or {}
        return cls(
            prompt=_price(payload.get("prompt")),
            completion=_price(payload.get("completion")),
            image=_price(payload.get("image")),
        )

    @property
    def total(self) -> float:
        return self.prompt + self.completion


@dataclass(frozen=True)
class Endpoint:
    name: str
    provider_name: str
    status: int = 0
    context_length: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Endpoint":
        status = payload.get("status")
        return cls(
            name=str(payload.get("name") or ""),
            provider_name=str(payload.get("provider_name") or ""),
            status=int(status) if status is not None else 0,
            context_length=int(payload.get("context_length") or 0),
        )


@dataclass(frozen=True)
class Model:
    id: str
    name: str
    canonical_slug: str
    created: int
    context_length: int
    pricing: Pricing = field(default_factory=Pricing)
    input_modalities: Tuple[str, ...] = ("text",)
    output_modalities: Tuple[str, ...] = ("text",)
    description: str = ""
    endpoints: Tuple[Endpoint, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Model":
        architecture = payload.get("architecture") or {}
        model_id = str(payload["id"])
        return cls(
            id=model_id,
            name=str(payload.get("name") or model_id),
            canonical_slug=str(payload.get("canonical_slug") or model_id),
            created=int(payload.get("created") or 0),
            context_length=int(payload.get("context_length") or 0),
            pricing=Pricing.from_payload(payload.get("pricing")),
            input_modalities=tuple(architecture.get("input_modalities") or ()),
            output_modalities=tuple(architecture.get("output_modalities") or ()),
            description=str(payload.get("description") or ""),
        )

    def accepts(self, modality: str) -> bool:
        return modality in self.input_modalities


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str


@dataclass(frozen=True)
class FilePart:
    url: str
    filename: str
    media_type: str


ContentPart = Union[TextPart, ImagePart, FilePart]


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: Tuple[ContentPart, ...]

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant"):
            raise ValueError(f"unknown turn role: {self.role}")
        if not self.content:
            raise ValueError("a turn needs at least one content part")

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))


@dataclass(frozen=True)
class GenerationResult:
    text: str
    model_id: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class User:
    id: str
    model: Optional[Model]
    system_prompt: str = ""
