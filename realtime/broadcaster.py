"""
Event Broadcaster — pushes pipeline events to connected clients.

Provides:
- Authenticated connection registration (credential checked first)
- Rooms: ``user:{id}`` joined on connect, ``conversation:{id}`` on request
- Client event routing (subscribe, unsubscribe, typing, presence, ping)
- Bus bridge: job, scheduled-message, outbox and inbound events → rooms,
  fanned out from a backlog so publishers never wait on a socket

Delivery is best-effort: no replay buffer, and a connection whose send
fails is dropped. Clients re-read state through the REST endpoints after
reconnecting.
"""
from __future__ import annotations

import asyncio
import structlog
import time
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from core.errors import AuthenticationError
from core.events import EventBus, Topics
from models.schemas import DomainEvent, RealtimeEvent, utcnow
from realtime.auth import TokenVerifier

logger = structlog.get_logger()

AccessCheck = Callable[[str, str], Awaitable[bool]]


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class Connection:
    """Tracks a single WebSocket connection."""

    def __init__(self, user_id: str, ws: Any, role: str = ""):
        self.id = str(uuid.uuid4())
        self.user_id = user_id
        self.role = role
        self.ws = ws
        self.connected_at = utcnow()
        self.last_seen = time.monotonic()
        self.rooms: set[str] = set()
        self.presence = "online"


async def _deny_all(user_id: str, conversation_id: str) -> bool:
    return False


class EventBroadcaster:

    def __init__(
        self,
        verifier: TokenVerifier,
        access_check: Optional[AccessCheck] = None,
        open_roles: tuple[str, ...] = (),
        send_timeout: float = 5.0,
        max_backlog: int = 1000,
    ):
        self.verifier = verifier
        self._access_check = access_check or _deny_all
        self.open_roles = tuple(open_roles)
        self.send_timeout = send_timeout
        self.max_backlog = max_backlog
        self._backlog: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._unsubscribers: list[Callable[[], None]] = []
        self._sent = 0
        self._dropped = 0
        self._overflow = 0

    # ── Connection management ─────────────────────────────────

    async def connect(self, ws: Any, token: Optional[str]) -> Connection:
        """
        Verify the credential, then register the connection and join its
        user room. Raises AuthenticationError before any registration.
        """
        try:
            claims = self.verifier.verify(token)
        except AuthenticationError:
            logger.warning("realtime_auth_rejected")
            raise

        user_id = claims["user_id"]
        conn = Connection(user_id, ws, role=str(claims.get("role", "")))
        self._connections[conn.id] = conn
        self._join(conn, user_room(user_id))
        logger.info("realtime_connected", user_id=user_id, connection_id=conn.id)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        for room in list(conn.rooms):
            self._leave(conn, room)
        logger.info("realtime_disconnected", user_id=conn.user_id, connection_id=conn.id)

    def _join(self, conn: Connection, room: str):
        self._rooms[room].add(conn.id)
        conn.rooms.add(room)

    def _leave(self, conn: Connection, room: str):
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    async def subscribe(self, conn: Connection, conversation_id: str) -> bool:
        if not conversation_id:
            return False
        allowed = bool(conn.role) and conn.role in self.open_roles
        if not allowed and not await self._access_check(conn.user_id, conversation_id):
            logger.warning("realtime_subscribe_denied", user_id=conn.user_id,
                           conversation_id=conversation_id)
            return False
        self._join(conn, conversation_room(conversation_id))
        return True

    async def unsubscribe(self, conn: Connection, conversation_id: str) -> None:
        self._leave(conn, conversation_room(conversation_id))

    def connections_for(self, user_id: str) -> list[Connection]:
        return [self._connections[c] for c in self._rooms.get(user_room(user_id), ()) if c in self._connections]

    # ── Emit ──────────────────────────────────────────────────

    async def _send(self, conn: Connection, event: RealtimeEvent) -> bool:
        try:
            await asyncio.wait_for(conn.ws.send_json(event.to_wire()), timeout=self.send_timeout)
            self._sent += 1
            return True
        except Exception as e:
            self._dropped += 1
            logger.warning("realtime_send_failed", user_id=conn.user_id,
                           connection_id=conn.id, error=str(e))
            await self.disconnect(conn)
            return False

    async def emit_to_rooms(self, rooms: list[str], event_type: str,
                            data: Optional[dict[str, Any]] = None,
                            exclude: Optional[str] = None) -> int:
        """Send once to every connection in any of ``rooms``."""
        event = RealtimeEvent(type=event_type, data=data or {})
        ids: dict[str, None] = {}
        for room in rooms:
            ids.update(dict.fromkeys(self._rooms.get(room, ())))
        targets = [self._connections[c] for c in ids if c in self._connections and c != exclude]
        delivered = 0
        for conn in targets:
            if await self._send(conn, event):
                delivered += 1
        return delivered

    async def emit_to_room(self, room: str, event_type: str, data: Optional[dict[str, Any]] = None,
                           exclude: Optional[str] = None) -> int:
        return await self.emit_to_rooms([room], event_type, data, exclude)

    async def emit_to_user(self, user_id: str, event_type: str, data: Optional[dict[str, Any]] = None) -> int:
        return await self.emit_to_room(user_room(user_id), event_type, data)

    async def emit_to_conversation(self, conversation_id: str, event_type: str,
                                   data: Optional[dict[str, Any]] = None,
                                   exclude: Optional[str] = None) -> int:
        return await self.emit_to_room(conversation_room(conversation_id), event_type, data, exclude)

    # ── Client events ─────────────────────────────────────────

    async def handle_client_event(self, conn: Connection, event: dict[str, Any]) -> None:
        conn.last_seen = time.monotonic()
        event_type = event.get("type", "")
        conversation_id = event.get("conversation_id") or event.get("conversationId") or ""

        if event_type == "ping":
            await self._send(conn, RealtimeEvent(type="pong"))

        elif event_type == "subscribe":
            ok = await self.subscribe(conn, conversation_id)
            await self._send(conn, RealtimeEvent(
                type="subscribed" if ok else "error",
                data={"conversation_id": conversation_id} if ok
                else {"code": "forbidden", "conversation_id": conversation_id},
            ))

        elif event_type == "unsubscribe":
            await self.unsubscribe(conn, conversation_id)
            await self._send(conn, RealtimeEvent(type="unsubscribed",
                                                 data={"conversation_id": conversation_id}))

        elif event_type == "typing":
            if conversation_room(conversation_id) in conn.rooms:
                await self.emit_to_conversation(
                    conversation_id, "typing",
                    {"user_id": conn.user_id, "conversation_id": conversation_id,
                     "is_typing": bool(event.get("is_typing", True))},
                    exclude=conn.id,
                )

        elif event_type == "presence":
            conn.presence = str(event.get("status", "online"))
            for room in [r for r in conn.rooms if r.startswith("conversation:")]:
                await self.emit_to_room(room, "presence",
                                        {"user_id": conn.user_id, "status": conn.presence},
                                        exclude=conn.id)

        else:
            await self._send(conn, RealtimeEvent(type="error",
                                                 data={"code": "unknown_event", "type": event_type}))

    # ── Bus bridge ────────────────────────────────────────────

    def attach(self, bus: EventBus) -> None:
        """Bridge bus topics to rooms. Must be called from a running event loop."""
        self._backlog = asyncio.Queue(maxsize=self.max_backlog)
        self._pump = asyncio.create_task(self._drain(self._backlog))
        for topic in (Topics.JOBS, Topics.SCHEDULED, Topics.OUTBOX, Topics.INBOUND):
            self._unsubscribers.append(bus.subscribe(topic, self._on_domain_event))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._pump is not None:
            self._pump.cancel()
        self._pump = None
        self._backlog = None

    def _on_domain_event(self, event: DomainEvent) -> None:
        if self._backlog is None:
            return
        try:
            self._backlog.put_nowait(event)
        except asyncio.QueueFull:
            self._overflow += 1
            logger.warning("realtime_backlog_full", type=event.type, max_backlog=self.max_backlog)

    async def _drain(self, backlog: asyncio.Queue) -> None:
        while True:
            event = await backlog.get()
            try:
                await self._fan_out(event)
            except Exception as e:
                logger.error("realtime_fan_out_failed", type=event.type, error=str(e))
            finally:
                backlog.task_done()

    async def _fan_out(self, event: DomainEvent) -> None:
        rooms = []
        if event.user_id:
            rooms.append(user_room(event.user_id))
        if event.conversation_id:
            rooms.append(conversation_room(event.conversation_id))
        if rooms:
            data = {**event.data, "conversation_id": event.conversation_id}
            await self.emit_to_rooms(rooms, event.type, data)

    async def flush(self) -> None:
        """Wait until every bridged event so far has been fanned out."""
        if self._backlog is not None:
            await self._backlog.join()

    def stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "users": len({c.user_id for c in self._connections.values()}),
            "rooms": len(self._rooms),
            "sent": self._sent,
            "dropped": self._dropped,
            "overflow": self._overflow,
        }

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            try:
                await conn.ws.close()
            except Exception as e:
                logger.debug("realtime_close_failed", connection_id=conn.id, error=str(e))
            await self.disconnect(conn)
