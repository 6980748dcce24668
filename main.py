import asyncio
import logging
import signal

from dotenv import load_dotenv
from openai import AsyncOpenAI

from core.assistant import Assistant
from core.catalog import ModelCatalog, RegistryClient
from core.config import load_settings
from core.preferences import PreferenceStore
from core.router import Router
from transports.discord_bot import run_discord_bot

log = logging.getLogger(__name__)


async def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s :: %(message)s")

    settings = load_settings()

    catalog = ModelCatalog(RegistryClient(settings.base_url), settings.curation)
    await catalog.refresh()
    if not catalog.current_models():
        log.warning("no models passed curation; responses will fail until the next refresh")

    client = AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=settings.base_url)
    preferences = PreferenceStore(settings.db_path)
    assistant = Assistant(
        catalog=catalog,
        router=Router(client, catalog),
        preferences=preferences,
        default_model=settings.default_model,
        default_prompt=settings.default_prompt,
        max_reply_depth=settings.max_reply_depth,
        thread_history_limit=settings.thread_history_limit,
    )

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    refresh_task = asyncio.create_task(catalog.run_periodic(settings.refresh_seconds))
    discord_task = asyncio.create_task(
        run_discord_bot(assistant, settings.discord_token, settings.guild_id)
    )
    stop_task = asyncio.create_task(stop_event.wait())

    await asyncio.wait({discord_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    for task in (refresh_task, discord_task, stop_task):
        task.cancel()
    for task in (refresh_task, discord_task, stop_task):
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log.exception("task ended with an error: %s", exc)

    await catalog.close()
    await client.close()
    preferences.close()


if __name__ == "__main__":
    asyncio.run(main())
