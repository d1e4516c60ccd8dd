"""Protocol and domain sniffing over the first bytes of a connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple

log = logging.getLogger(__name__)


class Network(Enum):
    """Transport network of a connection."""

    UNKNOWN = 0
    TCP = 2
    UDP = 3


class NoClue(Exception):
    """A sniffer needs more data to decide.

    ``address_in_range`` tells, when known, whether the target address lies
    in the fake DNS pool.
    """

    def __init__(self, message: str = "no clue", address_in_range: bool | None = None):
        super().__init__(message)
        self.address_in_range = address_in_range


class UnknownContent(Exception):
    """No sniffer recognises the content."""


@dataclass(frozen=True)
class SniffResult:
    """A detected protocol and, if found, the domain being reached."""

    protocol: str
    domain: str = ""


@dataclass(frozen=True)
class FakeDNSSniffResult(SniffResult):
    """A domain recovered from a fake DNS address."""

    protocol: str = field(default="fakedns", init=False)


@dataclass(frozen=True)
class DNSThenOthersSniffResult(SniffResult):
    """A result from another sniffer, found for an address in the fake DNS pool."""

    protocol: str = field(default="fakedns+others", init=False)
    protocol_original_name: str = ""

    def is_proto_subset_of(self, protocol_name: str) -> bool:
        """True if ``protocol_name`` starts with the original protocol."""
        return protocol_name.startswith(self.protocol_original_name)


@dataclass(frozen=True)
class CompositeResult:
    """Domain from a metadata result combined with protocol from a content result."""

    domain_result: SniffResult
    protocol_result: SniffResult

    @property
    def protocol(self) -> str:
        return self.protocol_result.protocol

    @property
    def domain(self) -> str:
        return self.domain_result.domain

    def protocol_for_domain_result(self) -> str:
        """Protocol of the result that supplied the domain."""
        return self.domain_result.protocol


# Target of a connection: its network and address.
Target = Tuple[Network, str]
SniffFunc = Callable[[Optional[bytes], Optional[Target]], Optional[SniffResult]]


@dataclass
class ProtocolSniffer:
    """One sniffer.

    ``sniff`` receives the payload (None for metadata sniffing) and the
    connection target; it returns a result, raises :class:`NoClue` to ask for
    more data, or raises any other exception to give up.  A metadata sniffer
    runs once at connection setup without payload.
    """

    sniff: SniffFunc
    metadata: bool = False
    network: Network = Network.UNKNOWN


def make_fake_dns_sniffer(engine: Any) -> ProtocolSniffer:
    """Metadata sniffer that maps fake DNS addresses back to domains.

    ``engine`` provides ``get_domain_from_fake_dns(address)`` and optionally
    ``is_ip_in_ip_pool(address)``.
    """
    if engine is None:
        raise ValueError("FakeDNSEngine is not initialized, but such a sniffer is used")

    def sniff(payload: bytes | None, target: Target | None) -> SniffResult | None:
        if target is None:
            raise NoClue()
        network, address = target
        if network in (Network.TCP, Network.UDP):
            domain = engine.get_domain_from_fake_dns(address)
            if domain:
                log.info("fake dns got domain: %s for ip: %s", domain, address)
                return FakeDNSSniffResult(domain)
        in_pool = getattr(engine, "is_ip_in_ip_pool", None)
        if callable(in_pool):
            raise NoClue(address_in_range=bool(in_pool(address)))
        raise NoClue()

    return ProtocolSniffer(sniff=sniff, metadata=True)


def make_fake_dns_then_others(
    fake_dns_sniffer: ProtocolSniffer, others: Iterable[ProtocolSniffer]
) -> ProtocolSniffer:
    """Sniffer that, for addresses in the fake DNS pool, asks the other sniffers."""
    others = list(others)

    def sniff(payload: bytes | None, target: Target | None) -> SniffResult | None:
        try:
            return fake_dns_sniffer.sniff(payload, target)
        except NoClue as clue:
            in_range = clue.address_in_range
        if in_range is None:
            log.warning("fake dns sniffer did not set address in range option, assume false.")
            raise NoClue()
        if not in_range:
            log.debug("ip address not in fake dns range, return as is")
            raise NoClue()
        for other in others:
            if not (other.metadata or payload is not None):
                continue
            try:
                result = other.sniff(payload, target)
            except Exception:
                continue
            if result is not None:
                return DNSThenOthersSniffResult(
                    domain=result.domain, protocol_original_name=result.protocol
                )
        raise NoClue()

    return ProtocolSniffer(sniff=sniff, metadata=False)


class Sniffer:
    """Runs a set of sniffers, narrowing to those still undecided after each round."""

    def __init__(
        self,
        sniffers: Iterable[ProtocolSniffer],
        fake_dns_engine: Any = None,
        target: Target | None = None,
    ) -> None:
        self.sniffers = list(sniffers)
        self.target = target
        if fake_dns_engine is not None:
            fake = make_fake_dns_sniffer(fake_dns_engine)
            others = list(self.sniffers)
            self.sniffers = [make_fake_dns_then_others(fake, others), *others, fake]

    def _run(self, sniffer: ProtocolSniffer, payload: bytes | None,
             pending: list[ProtocolSniffer]) -> SniffResult | None:
        try:
            return sniffer.sniff(payload, self.target)
        except NoClue:
            pending.append(sniffer)
        except Exception:
            pass
        return None

    def _finish(self, pending: list[ProtocolSniffer]) -> None:
        if pending:
            self.sniffers = pending
            raise NoClue()
        raise UnknownContent("unknown content")

    def sniff(self, payload: bytes, network: Network) -> SniffResult:
        """Sniff a payload with the content sniffers for ``network``."""
        pending: list[ProtocolSniffer] = []
        for sniffer in self.sniffers:
            if sniffer.metadata or sniffer.network != network:
                continue
            result = self._run(sniffer, payload, pending)
            if result is not None:
                return result
        self._finish(pending)
        raise AssertionError("unreachable")

    def sniff_metadata(self) -> SniffResult:
        """Run the metadata sniffers; content sniffers stay pending."""
        pending: list[ProtocolSniffer] = []
        for sniffer in self.sniffers:
            if not sniffer.metadata:
                pending.append(sniffer)
                continue
            result = self._run(sniffer, None, pending)
            if result is not None:
                return result
        self._finish(pending)
        raise AssertionError("unreachable")