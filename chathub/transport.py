"""Real-time transports.

The hub core is an asyncio program; transports hand it connection events on
the event loop and deliver encoded payloads back. :class:`RNSTransport`
carries connections over Reticulum links. Reticulum invokes its callbacks on
its own threads, so every callback is marshalled onto the loop with
``call_soon_threadsafe`` before it touches hub state.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Hashable
from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode
from .config import HubRuntimeConfig
from .util import expand_path

if TYPE_CHECKING:
    from .service import HubService

ConnId = Hashable

# Delay between queueing a final error and tearing the link down, so the
# error packet is not dropped with the link.
CLOSE_GRACE_S = 0.25


def load_identity(path: str) -> RNS.Identity:
    p = expand_path(path)
    if not os.path.exists(p):
        raise RuntimeError(f"Identity not found at {p}")
    ident = RNS.Identity.from_file(p)
    if ident is None:
        raise RuntimeError(f"Failed to load identity from {p}")
    return ident


class Transport:
    """Base transport. Subclasses deliver payloads to connection ids."""

    def __init__(self) -> None:
        self.hub: HubService | None = None

    def attach(self, hub: HubService) -> None:
        self.hub = hub

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def send(self, conn_id: ConnId, payload: bytes) -> bool:
        raise NotImplementedError

    def close(self, conn_id: ConnId) -> None:
        raise NotImplementedError


class RNSTransport(Transport):
    def __init__(self, config: HubRuntimeConfig, identity: RNS.Identity) -> None:
        super().__init__()
        self.config = config
        self.identity = identity
        self.log = logging.getLogger("chathub.transport")
        self.destination: RNS.Destination | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._links: dict[str, RNS.Link] = {}
        self._announce_task: asyncio.Task | None = None

    @staticmethod
    def _fmt_link_id(link: RNS.Link) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return hex(id(link))

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self.announce()
        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_task = self._loop.create_task(self._announce_loop())

        self.log.info(
            "Listening dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex(),
        )

    async def stop(self) -> None:
        if self._announce_task is not None:
            self._announce_task.cancel()
            self._announce_task = None
        for link in list(self._links.values()):
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed", exc_info=True)
        self._links.clear()

    def announce(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "chathub", "v": 1, "hub": self.config.hub_name})
            )
            if self.hub is not None:
                self.hub.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    async def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while True:
            await asyncio.sleep(period)
            self.announce()

    # Reticulum thread callbacks

    def _call_on_loop(self, fn, *args: Any) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(fn, *args)

    def _on_link(self, link: RNS.Link) -> None:
        conn_id = self._fmt_link_id(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(conn_id, data))
        link.set_link_closed_callback(lambda closed: self._call_on_loop(self._closed, conn_id))
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(
                lambda resource: self._resource_concluded(conn_id, resource)
            )
        except Exception as e:
            self.log.warning("Failed to set resource callbacks link_id=%s: %s", conn_id, e)

        self._call_on_loop(self._opened, conn_id, link)
        self.log.info("Link established link_id=%s", conn_id)

    def _on_packet(self, conn_id: str, data: bytes) -> None:
        self._call_on_loop(self._deliver, conn_id, bytes(data))

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > self.config.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.config.max_resource_bytes,
                self._fmt_link_id(resource.link),
            )
            self._call_on_loop(self._count, "resources_rejected")
            return False
        return True

    def _resource_concluded(self, conn_id: str, resource: RNS.Resource) -> None:
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s", conn_id, resource.status
            )
            return
        try:
            payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
        except Exception as e:
            self.log.error("Failed to read resource data link_id=%s: %s", conn_id, e)
            return
        self._call_on_loop(self._count, "resources_received")
        self._call_on_loop(self._deliver, conn_id, bytes(payload))

    # Loop-side handlers

    def _count(self, key: str) -> None:
        if self.hub is not None:
            self.hub.stats.inc(key)

    def _opened(self, conn_id: str, link: RNS.Link) -> None:
        self._links[conn_id] = link
        if self.hub is not None:
            self.hub.on_connect(conn_id)

    def _closed(self, conn_id: str) -> None:
        self._links.pop(conn_id, None)
        if self.hub is not None:
            self.hub.on_disconnect(conn_id)

    def _deliver(self, conn_id: str, data: bytes) -> None:
        if self.hub is not None and conn_id in self._links:
            self.hub.on_packet(conn_id, data)

    # Outbound

    def send(self, conn_id: ConnId, payload: bytes) -> bool:
        link = self._links.get(conn_id)
        if link is None:
            return False
        mdu = getattr(link, "MDU", None)
        try:
            if mdu is None or len(payload) <= mdu:
                RNS.Packet(link, payload).send()
                return True
            if len(payload) > self.config.max_resource_bytes:
                self.log.error(
                    "Payload too large for resource transfer: %s > %s",
                    len(payload),
                    self.config.max_resource_bytes,
                )
                return False
            RNS.Resource(payload, link, advertise=True, auto_compress=False)
            self._count("resources_sent")
            self.log.debug("Sent resource link_id=%s size=%s", conn_id, len(payload))
            return True
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s", conn_id, len(payload), e
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s", conn_id, len(payload), exc_info=True
            )
        return False

    def close(self, conn_id: ConnId) -> None:
        link = self._links.get(conn_id)
        if link is None:
            return

        def teardown() -> None:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", conn_id, exc_info=True)

        if self._loop is not None:
            self._loop.call_later(CLOSE_GRACE_S, teardown)
        else:
            teardown()
