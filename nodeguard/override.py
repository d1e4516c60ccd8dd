"""Sniffing a connection's first bytes and deciding whether to reroute it."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Protocol

from nodeguard.sniffer import CompositeResult, Network, NoClue, Sniffer, UnknownContent

log = logging.getLogger(__name__)

# Size of the payload buffer used while sniffing.
BUFFER_SIZE = 8192
# How long one caching round waits for more data, in seconds.
CACHE_READ_TIMEOUT = 0.1
# Caching rounds tried before sniffing gives up.
MAX_ATTEMPTS = 2


class SniffingTimeout(Exception):
    """Sniffing did not reach a decision in time."""


class _Source(Protocol):
    def read(self, timeout: float | None = None) -> list[bytes]: ...

    def interrupt(self) -> None: ...


@dataclass
class SniffingRequest:
    """Sniffing settings of an inbound."""

    enabled: bool = False
    override_destination_for_protocol: list[str] = field(default_factory=list)
    exclude_for_domain: list[str] = field(default_factory=list)
    metadata_only: bool = False
    route_only: bool = False


class CachedReader:
    """Wraps a buffer source, keeping what was read for sniffing so it can be replayed.

    The source provides ``read(timeout=None)``, returning a list of byte
    buffers (empty, or raising ``TimeoutError``, when nothing arrived in
    time), and ``interrupt()``.
    """

    def __init__(self, source: _Source) -> None:
        self._source = source
        self._cache: list[bytes] = []
        self._lock = threading.Lock()

    def cache(self, capacity: int) -> bytes:
        """Wait briefly for more data, add it to the cache and return all cached bytes.

        ``capacity`` is the size of the sniffing buffer; a cache larger than
        it is returned whole all the same.
        """
        try:
            incoming = self._source.read(timeout=CACHE_READ_TIMEOUT)
        except TimeoutError:
            incoming = []
        with self._lock:
            self._cache.extend(b for b in incoming if b)
            return b"".join(self._cache)

    def read(self) -> list[bytes]:
        """Return the cached buffers first, then read from the source."""
        with self._lock:
            if self._cache:
                cached, self._cache = self._cache, []
                return cached
        return self._source.read()

    def interrupt(self) -> None:
        """Drop the cache and interrupt the source."""
        with self._lock:
            self._cache = []
        self._source.interrupt()


def _sniff_content(sniffer: Sniffer, reader: CachedReader, network: Network):
    for _ in range(MAX_ATTEMPTS):
        payload = reader.cache(BUFFER_SIZE)
        if payload:
            try:
                return sniffer.sniff(payload, network)
            except NoClue:
                pass
        if len(payload) >= BUFFER_SIZE:
            raise UnknownContent("unknown content")
    raise SniffingTimeout("timeout on sniffing")


def sniff(sniffer: Sniffer, reader: CachedReader, metadata_only: bool, network: Network):
    """Sniff a connection from its metadata and, unless ``metadata_only``, its content.

    A domain found from metadata is combined with a protocol found from
    content; failing content sniffing falls back to the metadata result.
    """
    meta_result = None
    meta_error: Exception | None = None
    try:
        meta_result = sniffer.sniff_metadata()
    except Exception as err:  # any sniffer failure counts as no metadata
        meta_error = err

    if metadata_only:
        if meta_error is not None:
            raise meta_error
        return meta_result

    content_result = None
    content_error: Exception | None = None
    try:
        content_result = _sniff_content(sniffer, reader, network)
    except Exception as err:
        content_error = err

    if meta_error is None:
        if content_error is not None:
            return meta_result
        return CompositeResult(meta_result, content_result)
    if content_error is not None:
        raise content_error
    return content_result


def _domain_excluded(domain: str, exclusions: list[str]) -> bool:
    for entry in exclusions:
        if entry.startswith("regexp:"):
            try:
                pattern = re.compile(entry[len("regexp:"):])
            except re.error:
                log.info("Unable to compile regex")
                continue
            if pattern.search(domain):
                return True
        elif domain.lower() == entry:
            return True
    return False


def should_override(result, request: SniffingRequest, target_in_fake_pool: bool) -> bool:
    """Whether a sniffed domain should replace the connection's destination.

    ``target_in_fake_pool`` tells whether the original target is an IP
    address inside the fake DNS pool.
    """
    domain = result.domain
    if not domain:
        return False
    if _domain_excluded(domain, request.exclude_for_domain):
        return False

    protocol = result.protocol
    for_domain = getattr(result, "protocol_for_domain_result", None)
    if callable(for_domain):
        protocol = for_domain()

    subset_of = getattr(result, "is_proto_subset_of", None)
    for wanted in request.override_destination_for_protocol:
        if protocol.startswith(wanted) or wanted.startswith(protocol):
            return True
        if protocol != "bittorrent" and wanted == "fakedns" and target_in_fake_pool:
            log.info("Using sniffer %s since the fake DNS missed", protocol)
            return True
        if callable(subset_of) and subset_of(wanted):
            return True
    return False