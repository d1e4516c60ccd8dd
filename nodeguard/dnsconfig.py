"""DNS settings file kept in step with what the panel sends for a node."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping

log = logging.getLogger(__name__)

DEFAULT_SERVERS = ("1.1.1.1", "localhost")
DNS_TAG = "dns_inbound"
_MAX_PORT = 65535


class DNSConfigError(ValueError):
    """The DNS settings cannot be understood."""


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise DNSConfigError(f"address {address}: missing ']' in address")
        host = address[1:end]
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise DNSConfigError(f"address {address}: missing port in address")
        port = rest[1:]
        if "[" in host or "]" in host:
            raise DNSConfigError(f"address {address}: unexpected bracket in address")
        return host, port
    i = address.rfind(":")
    if i < 0:
        raise DNSConfigError(f"address {address}: missing port in address")
    host = address[:i]
    if ":" in host:
        raise DNSConfigError(f"address {address}: too many colons in address")
    if "[" in host or "]" in host:
        raise DNSConfigError(f"address {address}: unexpected bracket in address")
    return host, address[i + 1:]


def _parse_port(text: str) -> int:
    if text.isascii() and text.isdigit() and int(text) <= _MAX_PORT:
        return int(text)
    return 0


def _server_entry(value: Mapping[str, Any]) -> dict[str, Any]:
    entry = dict(value)
    address = entry.get("address")
    if not isinstance(address, str):
        raise DNSConfigError("dns server entry needs a string address")
    if ":" in address and "/" not in address:
        host, port = _split_host_port(address)
        entry["address"] = host
        entry["port"] = _parse_port(port)
    return entry


def build_dns_config(
    dns_json: bytes | str | None, dns_map: Mapping[str, Mapping[str, Any]] | None
) -> bytes | None:
    """Render the DNS settings, or return None when the node carries none.

    Raw JSON takes precedence and is re-indented; otherwise the server map is
    appended to the default servers.
    """
    if dns_json:
        try:
            document = json.loads(dns_json)
        except ValueError as err:
            raise DNSConfigError(f"invalid dns json: {err}") from err
        return json.dumps(document, indent=1, ensure_ascii=False).encode()
    if dns_map:
        servers: list[Any] = list(DEFAULT_SERVERS)
        servers.extend(_server_entry(value) for value in dns_map.values())
        config = {"servers": servers, "tag": DNS_TAG}
        return json.dumps(config, indent=2, sort_keys=True, ensure_ascii=False).encode()
    return None


def save_dns_config(data: bytes | str, path: str | os.PathLike[str]) -> bool:
    """Write ``data`` to ``path`` if it differs; return whether it was written.

    The file must already exist. Content that is not a JSON object raises
    :class:`DNSConfigError` and leaves the file as it was.
    """
    if isinstance(data, str):
        data = data.encode()
    with open(path, "rb") as handle:
        current = handle.read()
    if current == data:
        return False
    try:
        document = json.loads(data)
    except ValueError as err:
        log.error("Failed to unmarshal DNS config: %s", err)
        raise DNSConfigError(f"invalid dns config: {err}") from err
    if not isinstance(document, dict):
        raise DNSConfigError("dns config must be a JSON object")
    with open(path, "wb") as handle:
        handle.write(data)
    return True


def update_dns_config(
    dns_json: bytes | str | None,
    dns_map: Mapping[str, Mapping[str, Any]] | None,
    path: str | os.PathLike[str],
) -> bool:
    """Render the node's DNS settings and save them; return whether the file changed."""
    data = build_dns_config(dns_json, dns_map)
    if data is None:
        return False
    return save_dns_config(data, path)