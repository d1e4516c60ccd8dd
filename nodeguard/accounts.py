"""Proxy user accounts built from panel users for the supported protocols."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from nodeguard.limiter import UserInfo, user_tag


class CipherType(Enum):
    """Shadowsocks AEAD ciphers understood by the classic server."""

    UNKNOWN = 0
    AES_128_GCM = 5
    AES_256_GCM = 6
    CHACHA20_POLY1305 = 7
    NONE = 9


_CIPHER_NAMES: dict[str, CipherType] = {
    "aes-128-gcm": CipherType.AES_128_GCM,
    "aead_aes_128_gcm": CipherType.AES_128_GCM,
    "aes-256-gcm": CipherType.AES_256_GCM,
    "aead_aes_256_gcm": CipherType.AES_256_GCM,
    "chacha20-poly1305": CipherType.CHACHA20_POLY1305,
    "aead_chacha20_poly1305": CipherType.CHACHA20_POLY1305,
    "chacha20-ietf-poly1305": CipherType.CHACHA20_POLY1305,
    "none": CipherType.NONE,
    "plain": CipherType.NONE,
}

_SS2022_KEY_LENGTHS: dict[str, int] = {
    "2022-blake3-aes-128-gcm": 16,
    "2022-blake3-aes-256-gcm": 32,
    "2022-blake3-chacha20-poly1305": 32,
}

# The other proxy core only derives keys for the AES variants.
_SING_SS2022_KEY_LENGTHS: dict[str, int] = {
    "2022-blake3-aes-128-gcm": 16,
    "2022-blake3-aes-256-gcm": 32,
}


@dataclass(frozen=True)
class UserAccount:
    """A user ready to be added to an inbound."""

    protocol: str
    email: str
    settings: dict[str, Any] = field(default_factory=dict)
    level: int = 0


def cipher_from_string(name: str) -> CipherType:
    """Map a cipher name (case-insensitive) to its type; unknown names give UNKNOWN."""
    return _CIPHER_NAMES.get(name.lower(), CipherType.UNKNOWN)


def ss_key_length(cipher: str) -> int:
    """Key length in bytes for a Shadowsocks 2022 cipher, 0 if not one."""
    return _SS2022_KEY_LENGTHS.get(cipher, 0)


def _derive_key(uuid: str, length: int) -> str:
    raw = uuid.encode()
    if len(raw) < length:
        raise ValueError(
            f"uuid {uuid!r} is shorter than the {length}-byte key it must provide"
        )
    return base64.b64encode(raw[:length]).decode("ascii")


def build_ss_user(tag: str, user: UserInfo, cipher: str, server_key: str) -> UserAccount:
    """Build a Shadowsocks user; a server key selects the 2022 edition."""
    email = user_tag(tag, user.uuid)
    if not server_key:
        return UserAccount(
            protocol="shadowsocks",
            email=email,
            settings={"password": user.uuid, "cipher": cipher_from_string(cipher)},
        )
    return UserAccount(
        protocol="shadowsocks2022",
        email=email,
        settings={"key": _derive_key(user.uuid, ss_key_length(cipher))},
    )


def build_trojan_user(tag: str, user: UserInfo) -> UserAccount:
    """Build a Trojan user whose password is its uuid."""
    return UserAccount(
        protocol="trojan",
        email=user_tag(tag, user.uuid),
        settings={"password": user.uuid},
    )


def build_vmess_user(tag: str, user: UserInfo) -> UserAccount:
    """Build a VMess user with automatic security."""
    return UserAccount(
        protocol="vmess",
        email=user_tag(tag, user.uuid),
        settings={"id": user.uuid, "security": "auto"},
    )


def build_vless_user(tag: str, user: UserInfo, flow: str) -> UserAccount:
    """Build a VLESS user with the node's flow."""
    return UserAccount(
        protocol="vless",
        email=user_tag(tag, user.uuid),
        settings={"id": user.uuid, "flow": flow},
    )


def build_users(
    node_type: str,
    tag: str,
    users: Iterable[UserInfo],
    flow: str = "",
    cipher: str = "",
    server_key: str = "",
) -> list[UserAccount]:
    """Build accounts for every user of a node of the given type."""
    if node_type == "vmess":
        return [build_vmess_user(tag, u) for u in users]
    if node_type == "vless":
        return [build_vless_user(tag, u, flow) for u in users]
    if node_type == "trojan":
        return [build_trojan_user(tag, u) for u in users]
    if node_type == "shadowsocks":
        return [build_ss_user(tag, u, cipher, server_key) for u in users]
    raise ValueError(f"unsupported node type: {node_type}")


def sing_ss_password(uuid: str, cipher: str) -> str:
    """Shadowsocks password for a multi-user inbound: a derived key for 2022 AES ciphers."""
    length = _SING_SS2022_KEY_LENGTHS.get(cipher)
    if length is None:
        return uuid
    return _derive_key(uuid, length)


def traffic_counter_names(tag: str, uuid: str) -> tuple[str, str]:
    """Names of the uplink and downlink traffic counters of a user."""
    user = user_tag(tag, uuid)
    return (
        "user>>>" + user + ">>>traffic>>>uplink",
        "user>>>" + user + ">>>traffic>>>downlink",
    )