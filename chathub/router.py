from __future__ import annotations

import logging
from collections.abc import Hashable
from typing import TYPE_CHECKING, Any

from .codec import decode
from .constants import (
    K_BODY,
    K_ROOM,
    K_T,
    T_ADD_REACTION,
    T_BLOCK_USER,
    T_CHAT_MESSAGE,
    T_DELETE_MESSAGE,
    T_EDIT_MESSAGE,
    T_HELLO,
    T_MARK_READ,
    T_PING,
    T_PONG,
    T_PRIVATE_MESSAGE,
    T_REMOVE_REACTION,
    T_SWITCH_ROOM,
    T_TYPING,
    T_UNBLOCK_USER,
)
from .envelope import validate_envelope
from .errors import ChatError, RateLimited, StoreError, ValidationError
from .session import Connection

if TYPE_CHECKING:
    from .service import HubService

ConnId = Hashable


def _body_dict(body: Any) -> dict[str, Any]:
    return body if isinstance(body, dict) else {}


class MessageRouter:
    """
    Decodes inbound packets and dispatches them by event type.

    This class is responsible for:
    - Decoding and validating envelopes
    - Rate limiting
    - Enforcing HELLO before anything else
    - Turning ChatError into error events for the originating connection
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chathub.router")

    async def route_packet(self, conn_id: ConnId, data: bytes) -> None:
        conn = self.hub.sessions.get(conn_id)
        if conn is None or conn.closing:
            return

        self.hub.stats.inc("pkts_in")
        self.hub.stats.inc("bytes_in", len(data))

        if not self.hub.sessions.refill_and_take(conn_id, 1.0):
            self.hub.stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited conn=%s user=%s", conn_id, conn.username)
            self.hub.send_error(conn_id, RateLimited())
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.hub.stats.inc("pkts_bad")
            self.log.debug("Bad packet conn=%s bytes=%s err=%s", conn_id, len(data), e)
            self.hub.send_error(conn_id, ValidationError(f"bad message: {e}"))
            return

        t = env.get(K_T)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s user=%s t=%s room=%r bytes=%s",
                conn_id,
                conn.username,
                t,
                env.get(K_ROOM),
                len(data),
            )

        try:
            await self._dispatch(conn, env)
        except ChatError as e:
            if isinstance(e, StoreError):
                self.log.error(
                    "Store failure conn=%s user=%s t=%s: %s",
                    conn_id,
                    conn.username,
                    t,
                    e,
                )
                # The cause may carry backend details; clients get the generic text.
                e = StoreError()
            elif self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Rejected conn=%s user=%s t=%s kind=%s msg=%s",
                    conn_id,
                    conn.username,
                    t,
                    e.kind,
                    e.message,
                )
            self.hub.send_error(conn_id, e)
            if e.fatal:
                self.hub.disconnect(conn_id, reason=e.kind)
        except Exception:
            self.log.exception(
                "Handler failed conn=%s user=%s t=%s", conn_id, conn.username, t
            )
            self.hub.send_error(conn_id, ChatError("internal error"))

    async def _dispatch(self, conn: Connection, env: dict) -> None:
        t = env.get(K_T)
        room = env.get(K_ROOM)
        body = env.get(K_BODY)
        conn_id = conn.conn_id
        hub = self.hub

        if t == T_PONG:
            self.hub.stats.inc("pongs_in")
            conn.awaiting_pong = None
            return

        if not conn.authenticated:
            if t != T_HELLO:
                raise ValidationError("send hello first")
            if conn.handshaking:
                raise ValidationError("hello already in progress")
            conn.handshaking = True
            try:
                await hub.handshake(conn_id, body)
            finally:
                conn.handshaking = False
            return

        b = _body_dict(body)

        if t == T_HELLO:
            raise ValidationError("already authenticated")
        elif t == T_SWITCH_ROOM:
            target = b.get("room", room)
            if target is None:
                raise ValidationError("room required")
            await hub.switch_room(conn_id, target)
        elif t == T_CHAT_MESSAGE:
            text = body if isinstance(body, str) else b.get("text")
            if isinstance(text, str) and text.strip().startswith("/"):
                if await hub.commands.handle(conn_id, text):
                    return
            await hub.pipeline.post_message(
                conn_id, text, b.get("fileUrl"), b.get("fileType")
            )
        elif t == T_PRIVATE_MESSAGE:
            await hub.pipeline.post_private_message(conn_id, b.get("to"), b.get("text"))
        elif t == T_TYPING:
            flag = body if isinstance(body, bool) else b.get("typing")
            hub.set_typing(conn_id, bool(flag))
        elif t == T_ADD_REACTION:
            await hub.pipeline.add_reaction(conn_id, b.get("messageId"), b.get("emoji"))
        elif t == T_REMOVE_REACTION:
            await hub.pipeline.remove_reaction(conn_id, b.get("messageId"), b.get("emoji"))
        elif t == T_EDIT_MESSAGE:
            await hub.pipeline.edit_message(conn_id, b.get("messageId"), b.get("text"))
        elif t == T_DELETE_MESSAGE:
            await hub.pipeline.delete_message(conn_id, b.get("messageId"))
        elif t == T_MARK_READ:
            await hub.pipeline.mark_read(conn_id, b.get("messageId"))
        elif t == T_BLOCK_USER:
            await hub.block_user(conn_id, b.get("username"))
        elif t == T_UNBLOCK_USER:
            await hub.unblock_user(conn_id, b.get("username"))
        elif t == T_PING:
            hub.to_conn(conn_id, T_PONG, body)
        else:
            raise ValidationError(f"unsupported message type {t}")
