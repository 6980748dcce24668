import asyncio
import logging
import re
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from .config import OPENROUTER_BASE_URL, CurationSettings
from .models import Endpoint, Model

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

CatalogListener = Callable[[Tuple[Model, ...]], Awaitable[None]]


class RegistryError(RuntimeError):
    """The model registry or an endpoint listing could not be fetched."""


class RegistryClient:
    """Thin aiohttp wrapper around the OpenRouter model registry."""

    def __init__(self, base_url: str = OPENROUTER_BASE_URL, *, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _get_json(self, url: str) -> Dict[str, Any]:
        try:
            async with self._get_session().get(url) as resp:
                if resp.status != 200:
                    raise RegistryError(f"GET {url} returned HTTP {resp.status}")
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RegistryError(f"GET {url} failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise RegistryError(f"GET {url} returned a non-object payload")
        return payload

    async def fetch_models(self) -> List[Model]:
        payload = await self._get_json(f"{self.base_url}/models")
        raw_models = payload.get("data")
        if not isinstance(raw_models, list):
            raise RegistryError("model registry response has no data list")
        models: List[Model] = []
        for item in raw_models:
            try:
                models.append(Model.from_payload(item))
            except (KeyError, TypeError, ValueError) as exc:
                log.debug("skipping malformed registry entry: %s", exc)
        return models

    async def fetch_endpoints(self, model: Model) -> List[Endpoint]:
        payload = await self._get_json(
            f"{self.base_url}/models/{model.canonical_slug}/endpoints"
        )
        data = payload.get("data") or {}
        raw_endpoints = data.get("endpoints") if isinstance(data, dict) else None
        if not raw_endpoints:
            log.info("no endpoints found for model %s", model.id)
            return []
        endpoints: List[Endpoint] = []
        for item in raw_endpoints:
            if not isinstance(item, dict):
                continue
            try:
                endpoints.append(Endpoint.from_payload(item))
            except (TypeError, ValueError) as exc:
                log.debug("skipping malformed endpoint for %s: %s", model.id, exc)
        return endpoints

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


# ----- curation stages -----


def filter_recent(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    cutoff = now - settings.max_age_days * SECONDS_PER_DAY
    return [model for model in models if model.created > cutoff]


def filter_capable(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    return [
        model
        for model in models
        if model.context_length >= settings.min_context_length
        and "text" in model.input_modalities
        and "text" in model.output_modalities
    ]


def filter_affordable(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    return [
        model
        for model in models
        if model.pricing.prompt <= settings.max_prompt_price
        and model.pricing.completion <= settings.max_completion_price
        and model.pricing.image <= settings.max_image_price
    ]


def filter_providers(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    prefixes = tuple(provider.lower() for provider in settings.providers)
    return [model for model in models if model.id.lower().startswith(prefixes)]


def dedupe_slugs(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    seen: set[str] = set()
    unique: List[Model] = []
    for model in models:
        if model.canonical_slug in seen:
            continue
        seen.add(model.canonical_slug)
        unique.append(model)
    return unique


def filter_mature(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    markers = tuple(marker.lower() for marker in settings.maturity_markers)
    return [
        model
        for model in models
        if not any(marker in model.name.lower() for marker in markers)
    ]


def clean_names(models: Iterable[Model], settings: CurationSettings, now: float) -> List[Model]:
    cleaned: List[Model] = []
    for model in models:
        provider, sep, rest = model.name.partition(": ")
        if sep and provider and rest and provider.lower() in rest.lower():
            # Removes every case-insensitive occurrence, including inside longer words.
            stripped = re.sub(re.escape(provider), "", rest, flags=re.IGNORECASE).strip()
            if stripped:
                model = replace(model, name=f"{provider}: {stripped}")
        cleaned.append(model)
    return cleaned


CURATION_STAGES = (
    filter_recent,
    filter_capable,
    filter_affordable,
    filter_providers,
    dedupe_slugs,
    filter_mature,
    clean_names,
)


def curate(models: Iterable[Model], settings: CurationSettings, now: Optional[float] = None) -> List[Model]:
    """Run the synchronous curation stages in order; endpoints are handled by the catalog."""

    now = time.time() if now is None else now
    candidates = list(models)
    for stage in CURATION_STAGES:
        candidates = stage(candidates, settings, now)
    return candidates


def usable_endpoints(endpoints: Iterable[Endpoint], settings: CurationSettings) -> Tuple[Endpoint, ...]:
    blocked = set(settings.blocked_endpoint_providers)
    return tuple(
        endpoint
        for endpoint in endpoints
        if endpoint.provider_name not in blocked and endpoint.status == 0
    )


# ----- selection -----


def least_expensive(models: Iterable[Model]) -> Optional[Model]:
    cheapest: Optional[Model] = None
    for model in models:
        if cheapest is None or model.pricing.total < cheapest.pricing.total:
            cheapest = model
    return cheapest


def resolve_model(
    models: Sequence[Model],
    preferred_id: Optional[str] = None,
    default_id: Optional[str] = None,
) -> Optional[Model]:
    """Stored choice, then the configured default, then the cheapest; ``None`` if empty."""

    by_id = {model.id: model for model in models}
    if preferred_id and preferred_id in by_id:
        return by_id[preferred_id]
    if default_id and default_id in by_id:
        return by_id[default_id]
    return least_expensive(models)


def top_choice_ids(models: Sequence[Model], limit: int) -> List[str]:
    return sorted(model.id for model in models[:limit])


class ModelCatalog:
    """Owned, swap-on-write snapshot of the selectable models."""

    def __init__(
        self,
        registry: RegistryClient,
        settings: Optional[CurationSettings] = None,
        *,
        concurrency: int = 8,
    ) -> None:
        self.registry = registry
        self.settings = settings or CurationSettings()
        self.concurrency = max(1, concurrency)
        self._models: Tuple[Model, ...] = ()
        self._blacklisted: set[str] = set()
        self._listeners: List[CatalogListener] = []

    def current_models(self) -> Tuple[Model, ...]:
        return self._models

    def get(self, model_id: Optional[str]) -> Optional[Model]:
        if not model_id:
            return None
        return next((model for model in self._models if model.id == model_id), None)

    def choices(self) -> Tuple[Model, ...]:
        return self._models[: self.settings.choice_limit]

    def subscribe(self, listener: CatalogListener) -> None:
        self._listeners.append(listener)

    def blacklist(self, model_id: str) -> bool:
        self._blacklisted.add(model_id)
        remaining = tuple(model for model in self._models if model.id != model_id)
        if len(remaining) == len(self._models):
            return False
        self._models = remaining
        log.warning("blacklisted model %s; %d models remain", model_id, len(remaining))
        return True

    async def refresh(self) -> Tuple[Model, ...]:
        now = time.time()
        try:
            fetched = await self.registry.fetch_models()
        except RegistryError as exc:
            log.warning(
                "model registry fetch failed, keeping %d cached models: %s",
                len(self._models),
                exc,
            )
            return self._models
        candidates = [
            model
            for model in curate(fetched, self.settings, now=now)
            if model.id not in self._blacklisted
        ]
        enriched = await self._enrich(candidates)
        snapshot = tuple(model for model in enriched if model.endpoints)
        # Blacklist calls may have landed while endpoints were being fetched.
        snapshot = tuple(model for model in snapshot if model.id not in self._blacklisted)
        previous = self._models
        self._models = snapshot
        log.info("model catalog refreshed: %d of %d models selectable", len(snapshot), len(fetched))
        limit = self.settings.choice_limit
        if top_choice_ids(previous, limit) != top_choice_ids(snapshot, limit):
            await self._notify(snapshot)
        return snapshot

    async def _enrich(self, models: Sequence[Model]) -> List[Model]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def enrich(model: Model) -> Model:
            async with semaphore:
                try:
                    endpoints = await self.registry.fetch_endpoints(model)
                except RegistryError as exc:
                    log.warning("failed to fetch endpoints for model %s: %s", model.id, exc)
                    return replace(model, endpoints=())
            return replace(model, endpoints=usable_endpoints(endpoints, self.settings))

        return list(await asyncio.gather(*(enrich(model) for model in models)))

    async def _notify(self, snapshot: Tuple[Model, ...]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception as exc:
                log.exception("catalog listener failed: %s", exc)

    async def run_periodic(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except Exception as exc:
                log.exception("scheduled model refresh failed: %s", exc)

    async def close(self) -> None:
        await self.registry.close()
