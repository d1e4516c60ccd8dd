"""Wiring a user's connection through limits, traffic counters and outbound selection."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from nodeguard.bucket import TokenBucket
from nodeguard.limiter import Limiter, LimiterNotFound, get_limiter
from nodeguard.stats import SizeStatWriter, StatsManager

log = logging.getLogger(__name__)

PICK_DEFAULT = 0
PICK_FORCED = 1
PICK_ROUTED = 2


class DispatchRejected(Exception):
    """The connection is refused and its link has been torn down."""


@dataclass
class InboundSession:
    """What is known about a connection when it arrives on an inbound."""

    tag: str
    source_ip: str
    user_email: str | None = None
    source_is_tcp: bool = True
    level: int = 0


class _Pipe:
    """An in-memory buffer channel between the two ends of a link."""

    def __init__(self) -> None:
        self._buffers: deque[bytes] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def write_multi_buffer(self, buffers: Iterable[bytes]) -> None:
        batch = [b for b in buffers if b]
        with self._cond:
            if self._closed:
                raise BrokenPipeError("pipe closed")
            self._buffers.extend(batch)
            self._cond.notify_all()

    def read(self, timeout: float | None = None) -> list[bytes]:
        """Return everything buffered; an empty list once closed and drained."""
        with self._cond:
            ready = self._cond.wait_for(lambda: self._buffers or self._closed, timeout)
            if not ready:
                raise TimeoutError("pipe read timed out")
            out = list(self._buffers)
            self._buffers.clear()
            return out

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def interrupt(self) -> None:
        with self._cond:
            self._closed = True
            self._buffers.clear()
            self._cond.notify_all()


class _RateLimitWriter:
    """Takes tokens from a bucket for every byte before passing buffers on."""

    def __init__(self, writer: Any, bucket: TokenBucket) -> None:
        self.writer = writer
        self.bucket = bucket

    def write_multi_buffer(self, buffers: Iterable[bytes]) -> None:
        batch = list(buffers)
        self.bucket.wait(sum(len(b) for b in batch))
        self.writer.write_multi_buffer(batch)

    def close(self) -> None:
        self.writer.close()

    def interrupt(self) -> None:
        self.writer.interrupt()


@dataclass
class Link:
    """One end of a connection: where to read from and where to write to."""

    reader: Any
    writer: Any

    def shut(self) -> None:
        """Close the writer and interrupt the reader."""
        for action in (getattr(self.writer, "close", None),
                       getattr(self.reader, "interrupt", None)):
            if callable(action):
                action()


def _counter_name(email: str, direction: str) -> str:
    return "user>>>" + email + ">>>traffic>>>" + direction


def detour_label(in_tag: str, out_tag: str, pick_route: int) -> str:
    """Access-log detour text for a connection going from ``in_tag`` to ``out_tag``."""
    if not out_tag:
        return ""
    if not in_tag:
        return out_tag
    if pick_route == PICK_FORCED:
        return in_tag + " ==> " + out_tag
    if pick_route == PICK_ROUTED:
        return in_tag + " -> " + out_tag
    return in_tag + " >> " + out_tag


class Dispatcher:
    """Builds links for user connections and chooses their outbound handler.

    ``handlers`` maps outbound tags to handlers; the first one is the default.
    """

    def __init__(
        self,
        handlers: Mapping[str, Any] | None = None,
        stats: StatsManager | None = None,
        user_uplink: bool = True,
        user_downlink: bool = True,
    ) -> None:
        self.handlers: dict[str, Any] = dict(handlers or {})
        self.stats = stats if stats is not None else StatsManager()
        self.user_uplink = user_uplink
        self.user_downlink = user_downlink

    def get_link(
        self, session: InboundSession, is_tcp: bool
    ) -> tuple[Link, Link, Limiter | None]:
        """Create the inbound and outbound links of a connection.

        Users are checked against their node's limiter; a refused connection
        has both links shut and raises :class:`DispatchRejected`.
        """
        uplink = _Pipe()
        downlink = _Pipe()
        inbound = Link(reader=downlink, writer=uplink)
        outbound = Link(reader=uplink, writer=downlink)

        email = session.user_email
        if not email:
            return inbound, outbound, None

        try:
            limiter = get_limiter(session.tag)
        except LimiterNotFound as err:
            log.info("get limiter %s error: not found", session.tag)
            outbound.shut()
            inbound.shut()
            raise DispatchRejected(f"get limiter {session.tag} error: not found") from err

        bucket, reject = limiter.check_limit(
            email, session.source_ip, is_tcp, session.source_is_tcp
        )
        if reject:
            log.info("Limited %s by conn or ip", email)
            outbound.shut()
            inbound.shut()
            raise DispatchRejected(f"Limited {email} by conn or ip")

        if bucket is not None:
            inbound.writer = _RateLimitWriter(inbound.writer, bucket)
            outbound.writer = _RateLimitWriter(outbound.writer, bucket)
        if self.user_uplink:
            counter = self.stats.get_or_register_counter(_counter_name(email, "uplink"))
            inbound.writer = SizeStatWriter(counter, inbound.writer)
        if self.user_downlink:
            counter = self.stats.get_or_register_counter(_counter_name(email, "downlink"))
            outbound.writer = SizeStatWriter(counter, outbound.writer)
        return inbound, outbound, limiter

    def check_rules(
        self,
        session: InboundSession,
        destination: str,
        protocol: str,
        limiter: Limiter | None,
    ) -> Limiter | None:
        """Apply the node's access rules to a destination and sniffed protocol.

        Returns the limiter whose rules were applied (None if there was none);
        a blocked destination or protocol raises :class:`DispatchRejected`.
        """
        if not session.user_email:
            return None
        if limiter is None:
            try:
                limiter = get_limiter(session.tag)
            except LimiterNotFound:
                log.error("get limiter %s error: not found", session.tag)
                return None
        if limiter.check_domain_rule(destination):
            message = f"User {session.user_email} access domain {destination} reject by rule"
            log.error(message)
            raise DispatchRejected(message)
        if protocol and limiter.check_protocol_rule(protocol):
            message = f"User {session.user_email} access protocol {protocol} reject by rule"
            log.error(message)
            raise DispatchRejected(message)
        return limiter

    def pick_handler(
        self, inbound_tag: str, forced_tag: str = "", route_tag: str = ""
    ) -> tuple[str, Any, int]:
        """Choose the outbound handler; return its tag, the handler and how it was picked.

        A forced tag must exist; a routed tag falls back when missing; then the
        handler named after the inbound and finally the default one are tried.
        """
        pick_route = PICK_DEFAULT
        chosen: str | None = None
        if forced_tag:
            if forced_tag not in self.handlers:
                log.error("non existing tag for platform initialized detour: %s", forced_tag)
                raise DispatchRejected(
                    f"non existing tag for platform initialized detour: {forced_tag}"
                )
            chosen = forced_tag
            pick_route = PICK_FORCED
        elif route_tag:
            if route_tag in self.handlers:
                chosen = route_tag
                pick_route = PICK_ROUTED
            else:
                log.warning("non existing outTag: %s", route_tag)

        if chosen is None and inbound_tag in self.handlers:
            chosen = inbound_tag
        if chosen is None and self.handlers:
            chosen = next(iter(self.handlers))
        if chosen is None:
            log.info("default outbound handler not exist")
            raise DispatchRejected("default outbound handler not exist")
        return chosen, self.handlers[chosen], pick_route

    def release(
        self, session: InboundSession, is_tcp: bool, limiter: Limiter | None
    ) -> None:
        """Give back the TCP connection slot taken when the link was created."""
        if not session.user_email or limiter is None or not is_tcp:
            return
        limiter.conn_limiter.del_conn_count(
            session.user_email, session.source_ip.removeprefix("::ffff:")
        )