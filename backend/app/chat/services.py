"""Wiring for the messaging core.

``build_services`` constructs every component once from an AppConfig and
injects them into each other; the FastAPI lifespan keeps the result on
``app.state.chat``. There is no module-level singleton, so tests build as
many independent instances as they need.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from app.auth.service import PasswordCredentialVerifier, SessionManager, UserDirectory
from app.config import AppConfig
from app.storage import MessageLog, create_backend

from .connections import ConnectionRegistry
from .gateway import Gateway
from .message_router import MessageRouter
from .presence import PresenceTracker
from .rooms import RoomDirectory
from .store import ConversationStore
from .typing_state import TypingCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ChatServices:
    config: AppConfig
    backend: MessageLog
    users: UserDirectory
    sessions: SessionManager
    registry: ConnectionRegistry
    presence: PresenceTracker
    rooms: RoomDirectory
    store: ConversationStore
    typing: TypingCoordinator
    gateway: Gateway
    router: MessageRouter
    _sweeper: Optional[asyncio.Task] = field(default=None, repr=False)

    def start(self) -> None:
        """Start background work; must be called from the running event loop."""
        interval = self.config.messaging.typing_sweep_interval_seconds
        if self._sweeper is None and interval > 0:
            self._sweeper = asyncio.get_running_loop().create_task(
                self.router.run_typing_sweeper(interval)
            )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.presence.close()
        await self.gateway.close_all()
        self.backend.close()
        logger.info("[Services] Messaging services stopped")


def build_services(config: AppConfig) -> ChatServices:
    backend = create_backend(config.storage)

    users = UserDirectory(backend, config.auth)
    users.seed(config.secrets.seed_accounts)
    sessions = SessionManager(ttl_seconds=config.auth.session_ttl_minutes * 60)
    registry = ConnectionRegistry(sessions)
    presence = PresenceTracker(users, linger_seconds=config.messaging.presence_linger_seconds)
    rooms = RoomDirectory(backend, config.rooms)
    store = ConversationStore(backend, rooms, config.messaging)
    typing = TypingCoordinator(ttl_seconds=config.messaging.typing_ttl_seconds)
    gateway = Gateway(registry, config.gateway)

    router = MessageRouter(
        users=users,
        verifier=PasswordCredentialVerifier(backend),
        sessions=sessions,
        registry=registry,
        presence=presence,
        rooms=rooms,
        store=store,
        typing=typing,
        gateway=gateway,
    )
    logger.info(
        f"[Services] Messaging services ready (storage={config.storage.backend}, "
        f"seed_accounts={len(config.secrets.seed_accounts)})"
    )
    return ChatServices(
        config=config,
        backend=backend,
        users=users,
        sessions=sessions,
        registry=registry,
        presence=presence,
        rooms=rooms,
        store=store,
        typing=typing,
        gateway=gateway,
        router=router,
    )
