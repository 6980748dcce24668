import logging
from typing import Dict, List, Optional, Tuple, Union

import discord
from discord import app_commands
from discord.ext import commands

from core.assistant import FAILURE_REPLY, Assistant, AssistantResponse, Outcome
from core.context import Attachment, Embed, MessageNode, ThreadKind
from core.models import ConversationTurn, Model, TextPart

log = logging.getLogger(__name__)

CHAT_THREAD_PREFIX = "Chat with"
SYSTEM_PROMPT_MAX_CHARS = 2000
REPLY_MENTIONS = discord.AllowedMentions(replied_user=True)
# Thread renames and other system notices are not part of the conversation.
CONVERSATION_TYPES = (discord.MessageType.default, discord.MessageType.reply)

BotUser = Union[discord.ClientUser, discord.User, discord.Member]


def thread_kind(channel) -> ThreadKind:
    if not isinstance(channel, discord.Thread):
        return ThreadKind.NONE
    if channel.type == discord.ChannelType.private_thread:
        return ThreadKind.PRIVATE
    return ThreadKind.PUBLIC


def to_message_node(message: discord.Message, bot_user: Optional[BotUser]) -> MessageNode:
    reference = message.reference
    reply_to = str(reference.message_id) if reference and reference.message_id else None
    embeds = tuple(
        Embed(
            author_name=getattr(embed.author, "name", None) or "",
            title=embed.title or "",
            description=embed.description or "",
        )
        for embed in message.embeds
    )
    attachments = tuple(
        Attachment(url=item.url, filename=item.filename, content_type=item.content_type)
        for item in message.attachments
    )
    return MessageNode(
        id=str(message.id),
        author_id=str(message.author.id),
        from_agent=bot_user is not None and message.author.id == bot_user.id,
        text=message.clean_content or "",
        embeds=embeds,
        attachments=attachments,
        thread=thread_kind(message.channel),
        reply_to_id=reply_to,
    )


async def resolve_reference(message: discord.Message) -> Optional[discord.Message]:
    reference = message.reference
    if reference is None or reference.message_id is None:
        return None
    resolved = reference.resolved or reference.cached_message
    if isinstance(resolved, discord.Message):
        return resolved
    try:
        return await message.channel.fetch_message(reference.message_id)
    except discord.HTTPException as exc:
        log.warning("could not fetch referenced message %s: %s", reference.message_id, exc)
        return None


def should_reply(
    message: discord.Message,
    bot_user: BotUser,
    parent: Optional[discord.Message],
) -> bool:
    """DMs, direct mentions and replies to the bot get an answer."""

    if message.guild is None:
        return True
    if any(user.id == bot_user.id for user in message.mentions):
        return True
    return parent is not None and parent.author.id == bot_user.id


class DiscordMessageSource:
    """Resolves reply parents and thread history for nodes built from discord messages."""

    def __init__(self, bot_user: Optional[BotUser]):
        self.bot_user = bot_user
        self._messages: Dict[str, discord.Message] = {}

    def remember(self, message: discord.Message) -> MessageNode:
        self._messages[str(message.id)] = message
        return to_message_node(message, self.bot_user)

    async def fetch_reply_target(self, node: MessageNode) -> Optional[MessageNode]:
        message = self._messages.get(node.id)
        if message is None:
            return None
        parent = await resolve_reference(message)
        if parent is None:
            return None
        return self.remember(parent)

    async def fetch_thread_history(self, node: MessageNode, limit: int) -> List[MessageNode]:
        message = self._messages.get(node.id)
        if message is None:
            return []
        try:
            history = [item async for item in message.channel.history(limit=limit)]
        except discord.HTTPException as exc:
            log.warning("could not read thread history for %s: %s", message.channel.id, exc)
            return []
        history.reverse()
        return [self.remember(item) for item in history if item.type in CONVERSATION_TYPES]


class DiscordTransport(commands.Bot):
    def __init__(self, assistant: Assistant, *, guild_id: Optional[int] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.assistant = assistant
        self.guild_id = guild_id

    async def setup_hook(self) -> None:
        self.tree.add_command(self._model_command())
        self.tree.add_command(self._system_command())
        self.tree.add_command(self._info_command())
        self.tree.add_command(self._reset_command())
        self.tree.add_command(self._chat_command())
        self.assistant.catalog.subscribe(self._on_catalog_changed)
        await self._sync_commands()

    async def _sync_commands(self) -> None:
        if self.guild_id:
            guild = discord.Object(id=self.guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()
        log.info("registered slash commands")

    async def _on_catalog_changed(self, models: Tuple[Model, ...]) -> None:
        log.info("selectable models changed, refreshing /model choices")
        self.tree.remove_command("model")
        self.tree.add_command(self._model_command())
        await self._sync_commands()

    # ----- slash commands -----

    def _model_command(self) -> app_commands.Command:
        @app_commands.command(name="model", description="Set the model to use for responses")
        @app_commands.describe(model="The model to use")
        async def set_model(interaction: discord.Interaction, model: str):
            selected = self.assistant.select_model(str(interaction.user.id), model)
            if selected is None:
                await interaction.response.send_message(
                    "Sorry, that model is no longer available.", ephemeral=True
                )
                return
            await interaction.response.send_message(
                f"You are now using **{selected.name}** ({selected.id})", ephemeral=True
            )

        choices = [
            app_commands.Choice(name=model.name[:100], value=model.id)
            for model in self.assistant.catalog.choices()
        ]
        if choices:
            app_commands.choices(model=choices)(set_model)
        return set_model

    def _system_command(self) -> app_commands.Command:
        @app_commands.command(name="system", description="Set the system prompt")
        @app_commands.describe(prompt="The system prompt to use")
        async def set_system(
            interaction: discord.Interaction,
            prompt: app_commands.Range[str, 1, SYSTEM_PROMPT_MAX_CHARS],
        ):
            self.assistant.set_system_prompt(str(interaction.user.id), prompt)
            await interaction.response.send_message(
                "Your system prompt has been set.", ephemeral=True
            )

        return set_system

    def _info_command(self) -> app_commands.Command:
        @app_commands.command(name="info", description="Get info about your current model")
        async def info(interaction: discord.Interaction):
            user = self.assistant.get_user(str(interaction.user.id))
            description = self.assistant.describe_model(user)
            if description is None:
                await interaction.response.send_message(
                    "No models are currently available.", ephemeral=True
                )
                return
            await interaction.response.send_message(description, ephemeral=True)

        return info

    def _reset_command(self) -> app_commands.Command:
        @app_commands.command(name="reset", description="Reset all settings to default")
        async def reset(interaction: discord.Interaction):
            self.assistant.reset(str(interaction.user.id))
            await interaction.response.send_message(
                "Your settings have been reset to default.", ephemeral=True
            )

        return reset

    def _chat_command(self) -> app_commands.Command:
        @app_commands.command(name="chat", description="Start a private chat thread")
        async def chat(interaction: discord.Interaction):
            channel = interaction.channel
            if not isinstance(channel, discord.TextChannel):
                await interaction.response.send_message(
                    "This command can only be used in a text channel.", ephemeral=True
                )
                return
            await interaction.response.defer(ephemeral=True)
            thread = await channel.create_thread(
                name=f"{CHAT_THREAD_PREFIX} {interaction.user.display_name}",
                auto_archive_duration=1440,
                type=discord.ChannelType.private_thread,
                reason="User started a chat",
            )
            await thread.add_user(interaction.user)
            await interaction.followup.send(
                f"Started a new chat thread: [{thread.name}]({thread.jump_url})",
                ephemeral=True,
            )

        return chat

    # ----- messages -----

    async def on_ready(self):
        log.info("Discord bot ready as %s", self.user)

    async def on_message(self, message: discord.Message):
        if message.author.bot or self.user is None:
            return
        channel = message.channel
        if isinstance(channel, discord.Thread) and channel.owner_id == self.user.id:
            await self._respond_in_thread(message, channel)
            return
        parent = None
        if message.guild is not None and message.reference is not None:
            parent = await resolve_reference(message)
        if should_reply(message, self.user, parent):
            await self._respond_to_message(message)

    def _agent_name(self, message: discord.Message) -> str:
        if message.guild is not None and message.guild.me is not None:
            return message.guild.me.display_name
        return self.user.display_name if self.user else ""

    async def _run_assistant(self, message: discord.Message) -> AssistantResponse:
        log.info("processing message from %s", message.author)
        source = DiscordMessageSource(self.user)
        leaf = source.remember(message)
        try:
            async with message.channel.typing():
                return await self.assistant.handle_message(
                    leaf,
                    source,
                    user_id=str(message.author.id),
                    agent_name=self._agent_name(message),
                )
        except Exception as exc:
            log.exception("Assistant error: %s", exc)
            return AssistantResponse(Outcome.GENERATION_FAILED, text=FAILURE_REPLY)

    async def _respond_to_message(self, message: discord.Message) -> None:
        response = await self._run_assistant(message)
        try:
            if not response.ok:
                await message.reply(response.text, allowed_mentions=REPLY_MENTIONS)
                return
            last = message
            for chunk in response.chunks:
                last = await last.reply(chunk.render(), allowed_mentions=REPLY_MENTIONS)
        except discord.HTTPException as exc:
            log.warning("failed to deliver reply to %s: %s", message.id, exc)

    async def _respond_in_thread(self, message: discord.Message, thread: discord.Thread) -> None:
        response = await self._run_assistant(message)
        try:
            if not response.ok:
                await thread.send(response.text, allowed_mentions=REPLY_MENTIONS)
                return
            for chunk in response.chunks:
                await thread.send(chunk.render(), allowed_mentions=REPLY_MENTIONS)
        except discord.HTTPException as exc:
            log.warning("failed to deliver reply in thread %s: %s", thread.id, exc)
            return
        if thread.name.startswith(CHAT_THREAD_PREFIX):
            await self._retitle_thread(thread, response)

    async def _retitle_thread(self, thread: discord.Thread, response: AssistantResponse) -> None:
        if response.user is None or response.result is None:
            return
        turns = list(response.turns)
        if response.result.text:
            turns.append(
                ConversationTurn(role="assistant", content=(TextPart(response.result.text),))
            )
        title = await self.assistant.suggest_thread_title(response.user, turns)
        if not title:
            return
        try:
            await thread.edit(name=title)
        except discord.HTTPException as exc:
            log.warning("failed to rename thread %s: %s", thread.id, exc)


async def run_discord_bot(assistant: Assistant, token: str, guild_id: Optional[int] = None):
    bot = DiscordTransport(assistant, guild_id=guild_id)
    try:
        await bot.start(token)
    finally:
        await bot.close()
