"""Outbound and fallback settings derived from node options."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass(frozen=True)
class FallbackServer:
    """Where connections of one ALPN fall back to."""

    server: str
    server_port: int


def build_freedom_outbound(
    tag: str, send_ip: str = "", enable_dns: bool = False, dns_type: str = ""
) -> dict[str, Any]:
    """Build a direct (freedom) outbound for a node."""
    domain_strategy = "Asis"
    if enable_dns:
        domain_strategy = dns_type or "UseIP"
    outbound: dict[str, Any] = {"protocol": "freedom", "tag": tag}
    if send_ip:
        outbound["sendThrough"] = send_ip
    outbound["settings"] = {"domainStrategy": domain_strategy}
    return outbound


def _parse_port(text: str) -> int:
    if not _INT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid port {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"port {text!r} out of range")
    return value % 65536


def process_fallback(fallbacks: Mapping[str, Mapping[str, str]]) -> dict[str, FallbackServer]:
    """Turn ALPN fallbacks with textual ports into servers with numeric ports.

    Each value holds ``server`` and ``server_port``; a port that is not an
    integer raises ``ValueError``.
    """
    result: dict[str, FallbackServer] = {}
    for alpn, entry in fallbacks.items():
        try:
            port = _parse_port(str(entry.get("server_port", "")))
        except ValueError as err:
            raise ValueError(
                f"unable to parse fallbackForALPN server port error: {err}"
            ) from err
        result[alpn] = FallbackServer(server=entry.get("server", ""), server_port=port)
    return result