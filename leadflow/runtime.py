"""Process-wide wiring: one instance of each collaborator per application."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request

from leadflow.config import Settings
from leadflow.logging_config import get_logger
from leadflow.services.bot_guard import BotGuard, BotGuardConfig
from leadflow.services.conversation_service import ConversationEngine
from leadflow.services.dedup_service import ReplayWindow
from leadflow.services.first_response_guard import FirstResponseGuard
from leadflow.services.gateway_service import Gateway
from leadflow.services.queue_service import ContactQueue
from leadflow.services.reply_service import ReplyBuilder, load_playbook
from leadflow.services.result import Result
from leadflow.services.sender_service import EvolutionSender, LoggingSender, OutboundSender
from leadflow.services.store_service import ConversationStore, InMemoryConversationStore, SqlConversationStore

logger = get_logger("runtime")


@dataclass
class Command:
    """Operator command routed through a contact's queue."""

    label: str
    run: Callable[[], Awaitable[Any]]


async def _run_command(command: Command) -> Any:
    return await command.run()


@dataclass
class Runtime:
    settings: Settings
    store: ConversationStore
    sender: OutboundSender
    queue: ContactQueue
    replay_window: ReplayWindow
    bot_guard: BotGuard
    first_response_guard: FirstResponseGuard
    engine: ConversationEngine
    gateway: Gateway

    async def run_for_contact(self, contact: str, label: str, run: Callable[[], Awaitable[Result]]) -> Result:
        """Run ``run`` after every pending inbound message for ``contact``."""
        result = await self.queue.enqueue(contact, Command(label=label, run=run), _run_command)
        if result is None:
            return Result.failure(f"{label} failed", "command_error")
        return result

    def stats(self) -> dict:
        return {
            "gateway": dict(self.gateway.stats),
            "queue": {
                "active_contacts": self.queue.active_contacts,
                "total_depth": self.queue.total_depth(),
                "processed": self.queue.processed,
                "failed": self.queue.failed,
            },
            "replay_window_size": len(self.replay_window),
            "first_response_markers": len(self.first_response_guard),
            "bot_windows": len(self.bot_guard),
        }

    async def shutdown(self) -> None:
        await self.queue.shutdown()


def build_store(settings: Settings) -> ConversationStore:
    if settings.store_backend == "memory":
        return InMemoryConversationStore()
    return SqlConversationStore()


def build_sender(settings: Settings) -> OutboundSender:
    if not settings.evolution_api_url:
        logger.warning("EVOLUTION_API_URL not configured, outbound actions are only logged")
        return LoggingSender()
    return EvolutionSender(
        settings.evolution_api_url,
        settings.evolution_api_key,
        settings.evolution_instance,
        timeout_seconds=settings.sender_timeout_seconds,
    )


def build_runtime(
    settings: Settings,
    *,
    store: Optional[ConversationStore] = None,
    sender: Optional[OutboundSender] = None,
) -> Runtime:
    store = store if store is not None else build_store(settings)
    sender = sender if sender is not None else build_sender(settings)
    queue = ContactQueue()
    replay_window = ReplayWindow(settings.dedup_window_seconds, settings.dedup_max_entries)
    bot_guard = BotGuard(BotGuardConfig.from_settings(settings))
    first_response_guard = FirstResponseGuard(settings.first_response_ttl_seconds)
    engine = ConversationEngine(
        store,
        sender,
        bot_guard=bot_guard,
        first_response_guard=first_response_guard,
        replies=ReplyBuilder(
            settings.agent_name,
            settings.company_name,
            playbook=load_playbook(Path(settings.playbook_path)) if settings.playbook_path else None,
        ),
    )
    gateway = Gateway(
        queue,
        engine.handle,
        replay_window,
        stale_seconds=settings.stale_event_seconds,
        default_country_code=settings.default_country_code,
    )
    return Runtime(
        settings=settings,
        store=store,
        sender=sender,
        queue=queue,
        replay_window=replay_window,
        bot_guard=bot_guard,
        first_response_guard=first_response_guard,
        engine=engine,
        gateway=gateway,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
