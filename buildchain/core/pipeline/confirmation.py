"""
Confirmation Gate - build requests need an explicit "yes" before anything runs.

A trigger message opens a BuildSession in `pending_confirmation` and writes a
time-bounded marker for the requester. Within the TTL a confirm keyword
launches the session and a cancel keyword cancels it. After the TTL the
marker is discarded and the message is treated as an ordinary one.
"""

import asyncio
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildchain.core.models import BuildSession, BuildStatus, PendingConfirmation
from buildchain.core.pipeline.catalogs import LocalizationCatalog
from buildchain.core.pipeline.chain_state import ChainStateStore, as_utc, utcnow
from buildchain.core.pipeline.errors import ConcurrentSessionConflict, ConfirmationExpired
from buildchain.core.pipeline.orchestrator import BuildOrchestrator

logger = structlog.get_logger()


# ==========================================================================
# Keyword Detection
# ==========================================================================

BUILD_TRIGGER_PATTERNS = [
    # English
    re.compile(
        r"\b(build|create|make|develop|scaffold|code)\b.*\b(app|application|tool|cli|"
        r"service|api|bot|website|site|program|project|script|library|game|dashboard)\b",
        re.IGNORECASE,
    ),
    # Spanish
    re.compile(
        r"\b(construye|constrúyeme|crea|créame|hazme|haz|desarrolla|programa)\b.*"
        r"\b(app|aplicación|aplicacion|herramienta|servicio|api|bot|web|programa|proyecto|juego)\b",
        re.IGNORECASE,
    ),
    # Portuguese
    re.compile(
        r"\b(construa|crie|faça|faca|desenvolva|programe)\b.*"
        r"\b(app|aplicativo|aplicação|ferramenta|serviço|api|bot|site|programa|projeto|jogo)\b",
        re.IGNORECASE,
    ),
    # French
    re.compile(
        r"\b(construis|construire|crée|créer|développe|développer|fais)\b.*"
        r"\b(app|application|outil|service|api|bot|site|programme|projet|jeu)\b",
        re.IGNORECASE,
    ),
    # German
    re.compile(
        r"\b(baue|bau|erstelle|entwickle|programmiere)\b.*"
        r"\b(app|anwendung|werkzeug|tool|dienst|api|bot|webseite|programm|projekt|spiel)\b",
        re.IGNORECASE,
    ),
]

CONFIRM_PHRASES = {
    "yes", "yep", "yeah", "sure", "ok", "okay", "go", "go ahead", "do it", "confirm",
    "sí", "si", "dale", "adelante", "hazlo",
    "sim", "pode", "bora",
    "oui", "vas-y", "d'accord",
    "ja", "los", "mach es",
}

CANCEL_PHRASES = {
    "no", "nope", "cancel", "stop", "abort", "never mind", "nevermind",
    "cancelar", "cancela",
    "não", "nao",
    "non", "annuler", "annule",
    "nein", "abbrechen", "stopp",
}

# Allowed after a confirm/cancel phrase; anything else makes the reply a modification
COURTESY_SUFFIXES = (
    "please", "thanks", "thank you", "pls",
    "por favor", "gracias", "obrigado", "obrigada",
    "s'il te plaît", "s'il vous plaît", "merci",
    "bitte", "danke",
)

_PUNCTUATION_RE = re.compile(r"[!.?¡¿,;:]+")


def _normalize(text: str) -> str:
    return " ".join(_PUNCTUATION_RE.sub(" ", text.lower()).split())


def _matches_phrase(text: str, phrases: set[str]) -> bool:
    """The whole reply is one phrase, optionally followed by a courtesy word."""
    normalized = _normalize(text)
    if normalized in phrases:
        return True
    for suffix in COURTESY_SUFFIXES:
        if normalized.endswith(" " + suffix):
            return normalized[: -len(suffix) - 1] in phrases
    return False


def is_build_request(text: str) -> bool:
    return any(pattern.search(text) for pattern in BUILD_TRIGGER_PATTERNS)


def is_build_confirmed(text: str) -> bool:
    return _matches_phrase(text, CONFIRM_PHRASES)


def is_build_cancelled(text: str) -> bool:
    return _matches_phrase(text, CANCEL_PHRASES)


# ==========================================================================
# Pending-Session Marker Store
# ==========================================================================

@dataclass
class PendingMarker:
    requester_id: str
    session_id: UUID
    created_at: datetime


class PendingMarkerStore(Protocol):
    async def write(self, requester_id: str, session_id: UUID) -> PendingMarker:
        ...

    async def read(self, requester_id: str) -> Optional[PendingMarker]:
        ...

    async def delete(self, requester_id: str) -> None:
        ...


class SqlPendingMarkerStore:
    """Markers in the `pending_confirmations` table, one per requester."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = ttl
        self.clock = clock

    async def write(self, requester_id: str, session_id: UUID) -> PendingMarker:
        marker = PendingMarker(requester_id, session_id, self.clock())
        async with self.session_factory() as db:
            await db.merge(PendingConfirmation(
                requester_id=requester_id,
                session_id=session_id,
                created_at=marker.created_at,
            ))
            await db.commit()
        return marker

    async def read(self, requester_id: str) -> Optional[PendingMarker]:
        """
        Return the live marker for a requester, if any.

        Raises:
            ConfirmationExpired: A marker exists but is older than the TTL
        """
        async with self.session_factory() as db:
            row = await db.get(PendingConfirmation, requester_id)
            if row is None:
                return None
            marker = PendingMarker(row.requester_id, row.session_id, as_utc(row.created_at))

        if self.clock() - marker.created_at > self.ttl:
            raise ConfirmationExpired(requester_id, marker.session_id)
        return marker

    async def delete(self, requester_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                delete(PendingConfirmation).where(PendingConfirmation.requester_id == requester_id)
            )
            await db.commit()


# ==========================================================================
# Gate
# ==========================================================================

class GateAction(str, Enum):
    IGNORED = "ignored"        # Not build related
    PROMPTED = "prompted"      # Confirmation requested
    REJECTED = "rejected"      # A build is already pending
    STARTED = "started"
    CANCELLED = "cancelled"
    MODIFY = "modify"          # Free text while pending; left to the caller


@dataclass
class GateReply:
    action: GateAction
    text: Optional[str] = None
    session_id: Optional[UUID] = None


class ConfirmationGate:
    """Turns inbound messages into pending, started or cancelled sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        markers: PendingMarkerStore,
        catalog: LocalizationCatalog,
        orchestrator: BuildOrchestrator,
        store: ChainStateStore,
        ttl_minutes: int = 15,
    ):
        self.session_factory = session_factory
        self.markers = markers
        self.catalog = catalog
        self.orchestrator = orchestrator
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _requester_lock(self, requester_id: str) -> AsyncIterator[None]:
        """Serialize one requester's messages; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(requester_id, asyncio.Lock())
        self._lock_users[requester_id] = self._lock_users.get(requester_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[requester_id] -= 1
            if self._lock_users[requester_id] == 0:
                del self._lock_users[requester_id]
                del self._locks[requester_id]

    async def handle_message(
        self,
        requester_id: str,
        channel: str,
        text: str,
        locale: str = "en",
    ) -> GateReply:
        """
        Route one inbound message.

        Args:
            requester_id: Stable sender identity
            channel: Originating channel (telegram, whatsapp, api, ...)
            text: Message text
            locale: Requester language for replies

        Returns:
            GateReply describing what happened and what to answer
        """
        async with self._requester_lock(requester_id):
            marker = await self._live_marker(requester_id)

            if marker is not None:
                if is_build_confirmed(text):
                    return await self._confirm(marker, locale)
                if is_build_cancelled(text):
                    return await self._cancel(marker, locale)

            if not is_build_request(text):
                if marker is not None:
                    return GateReply(GateAction.MODIFY, session_id=marker.session_id)
                return GateReply(GateAction.IGNORED)

            try:
                return await self._open(requester_id, channel, text, locale, marker)
            except ConcurrentSessionConflict as e:
                logger.info("build_already_pending", requester=requester_id, session_id=str(e.session_id))
                return GateReply(
                    GateAction.REJECTED,
                    self.catalog.lookup("build.already_pending", locale),
                    e.session_id,
                )

    async def _live_marker(self, requester_id: str) -> Optional[PendingMarker]:
        try:
            return await self.markers.read(requester_id)
        except ConfirmationExpired as e:
            logger.info("confirmation_expired", requester=requester_id, session_id=str(e.session_id))
            await self.markers.delete(requester_id)
            await self.store.mark_cancelled(e.session_id, "confirmation expired")
            return None

    async def _open(
        self,
        requester_id: str,
        channel: str,
        text: str,
        locale: str,
        marker: Optional[PendingMarker],
    ) -> GateReply:
        if marker is not None:
            raise ConcurrentSessionConflict(requester_id, marker.session_id)

        async with self.session_factory() as db:
            session = BuildSession(
                requester_id=requester_id,
                channel=channel,
                locale=locale,
                request_text=text,
                status=BuildStatus.PENDING_CONFIRMATION,
            )
            db.add(session)
            await db.commit()
            session_id = session.id

        await self.markers.write(requester_id, session_id)
        logger.info("build_pending_confirmation", requester=requester_id, session_id=str(session_id))

        return GateReply(
            GateAction.PROMPTED,
            self.catalog.render("build.confirm", locale, request=text, ttl=self.ttl_minutes),
            session_id,
        )

    async def _confirm(self, marker: PendingMarker, locale: str) -> GateReply:
        await self.markers.delete(marker.requester_id)

        async with self.session_factory() as db:
            result = await db.execute(
                update(BuildSession)
                .where(
                    BuildSession.id == marker.session_id,
                    BuildSession.status == BuildStatus.PENDING_CONFIRMATION,
                )
                .values(status=BuildStatus.RUNNING)
            )
            await db.commit()

        if result.rowcount == 0:
            # Cancelled elsewhere in the meantime
            logger.info("build_no_longer_pending", session_id=str(marker.session_id))
            return GateReply(GateAction.IGNORED, session_id=marker.session_id)

        self.orchestrator.launch(marker.session_id)
        logger.info("build_confirmed", requester=marker.requester_id, session_id=str(marker.session_id))
        return GateReply(
            GateAction.STARTED,
            self.catalog.lookup("build.started", locale),
            marker.session_id,
        )

    async def _cancel(self, marker: PendingMarker, locale: str) -> GateReply:
        await self.markers.delete(marker.requester_id)
        await self.store.mark_cancelled(marker.session_id, "cancelled by requester")
        logger.info("build_cancelled", requester=marker.requester_id, session_id=str(marker.session_id))
        return GateReply(
            GateAction.CANCELLED,
            self.catalog.lookup("build.cancelled", locale),
            marker.session_id,
        )
