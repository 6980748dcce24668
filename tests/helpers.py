"""Shared fakes for the catalog, router and assistant tests."""

from __future__ import annotations

import time
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

from core.catalog import RegistryError
from core.context import MessageNode
from core.models import Endpoint, Model, Pricing

DAY = 24 * 60 * 60


def make_model(model_id: str = "anthropic/claude-test", **overrides: Any) -> Model:
    fields: Dict[str, Any] = {
        "id": model_id,
        "name": f"Provider: {model_id.split('/')[-1]}",
        "canonical_slug": model_id,
        "created": int(time.time()) - 10 * DAY,
        "context_length": 200_000,
        "pricing": Pricing(prompt=0.000003, completion=0.000015),
        "input_modalities": ("text",),
        "output_modalities": ("text",),
        "endpoints": (),
    }
    fields.update(overrides)
    return Model(**fields)


def active_endpoint(provider: str = "Anthropic", status: int = 0) -> Endpoint:
    return Endpoint(name=f"{provider} endpoint", provider_name=provider, status=status)


class FakeRegistry:
    """Registry double; endpoints default to one active endpoint per model."""

    def __init__(
        self,
        models: Iterable[Model] = (),
        *,
        endpoints: Optional[Dict[str, List[Endpoint]]] = None,
        failing_endpoints: Iterable[str] = (),
    ) -> None:
        self.models = list(models)
        self.endpoints = endpoints or {}
        self.failing_endpoints = set(failing_endpoints)
        self.fail_models = False
        self.model_calls = 0
        self.endpoint_calls: List[str] = []
        self.closed = False

    async def fetch_models(self) -> List[Model]:
        self.model_calls += 1
        if self.fail_models:
            raise RegistryError("registry unavailable")
        return list(self.models)

    async def fetch_endpoints(self, model: Model) -> List[Endpoint]:
        self.endpoint_calls.append(model.id)
        if model.id in self.failing_endpoints:
            raise RegistryError(f"endpoints unavailable for {model.id}")
        return list(self.endpoints.get(model.id, [active_endpoint()]))

    async def close(self) -> None:
        self.closed = True


class FakeCompletions:
    def __init__(self, content: str = "", *, error: Optional[Exception] = None, usage=None, model=None):
        self.content = content
        self.error = error
        self.usage = usage
        self.model = model
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message)],
            model=self.model or kwargs["model"],
            usage=self.usage,
        )


def fake_client(completions: FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


class FakeSource:
    """In-memory message graph keyed by node id."""

    def __init__(self, nodes: Iterable[MessageNode] = (), *, thread: Iterable[MessageNode] = ()):
        self.nodes = {node.id: node for node in nodes}
        self.thread = list(thread)
        self.reply_fetches: List[str] = []
        self.thread_limits: List[int] = []

    async def fetch_reply_target(self, node: MessageNode) -> Optional[MessageNode]:
        self.reply_fetches.append(node.id)
        if node.reply_to_id is None:
            return None
        return self.nodes.get(node.reply_to_id)

    async def fetch_thread_history(self, node: MessageNode, limit: int) -> List[MessageNode]:
        self.thread_limits.append(limit)
        return self.thread[-limit:]


def user_node(node_id: str, text: str, *, reply_to: Optional[str] = None, **overrides: Any) -> MessageNode:
    fields: Dict[str, Any] = {
        "id": node_id,
        "author_id": "user-1",
        "from_agent": False,
        "text": text,
        "reply_to_id": reply_to,
    }
    fields.update(overrides)
    return MessageNode(**fields)


def agent_node(node_id: str, text: str, *, reply_to: Optional[str] = None, **overrides: Any) -> MessageNode:
    return user_node(node_id, text, reply_to=reply_to, author_id="agent", from_agent=True, **overrides)
