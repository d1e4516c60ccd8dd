"""Per-node user limits: speed, connections, devices and access rules."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from nodeguard.bucket import TokenBucket
from nodeguard.conn import ConnLimiter

log = logging.getLogger(__name__)

CLEAR_INTERVAL = 180.0
_MAPPED_IPV4_PREFIX = "::ffff:"


@dataclass
class UserInfo:
    """A user as delivered by the panel."""

    id: int
    uuid: str
    speed_limit: int = 0
    device_limit: int = 0


@dataclass(frozen=True)
class OnlineUser:
    """A user seen online from one IP."""

    uid: int
    ip: str


@dataclass
class Rules:
    """Access rules: destination regexes and blocked protocols."""

    regexp: list[str] = field(default_factory=list)
    protocol: list[str] = field(default_factory=list)


@dataclass
class LimitConfig:
    """Node-wide limit settings."""

    speed_limit: int = 0
    ip_limit: int = 0
    conn_limit: int = 0
    enable_realtime: bool = False


@dataclass
class UserLimitInfo:
    """Limits that apply to one user."""

    uid: int = 0
    speed_limit: int = 0
    device_limit: int = 0
    dynamic_speed_limit: int = 0
    expire_time: int = 0
    over_limit: bool = False


class LimiterNotFound(LookupError):
    """No limiter is registered for the requested tag."""


def user_tag(tag: str, uuid: str) -> str:
    """Key that identifies a user within a node."""
    return f"{tag}|{uuid}"


def determine_speed_limit(limit1: int, limit2: int) -> int:
    """Return the smaller non-zero limit, or 0 if both are zero."""
    if limit1 == 0 or limit2 == 0:
        return max(limit1, limit2)
    return min(limit1, limit2)


def _limit_info_for(user: UserInfo) -> UserLimitInfo:
    return UserLimitInfo(
        uid=user.id,
        speed_limit=user.speed_limit,
        device_limit=user.device_limit,
    )


class Limiter:
    """Limits and online tracking for the users of one node."""

    def __init__(
        self,
        config: LimitConfig,
        alive_list: dict[int, int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.domain_rules: list[re.Pattern[str]] = []
        self.protocol_rules: list[str] = []
        self.speed_limit = config.speed_limit
        self.user_online_ip: dict[str, dict[str, int]] = {}
        self.old_user_online: dict[str, int] = {}
        self.uuid_to_uid: dict[str, int] = {}
        self.user_limit_info: dict[str, UserLimitInfo] = {}
        self.conn_limiter = ConnLimiter(
            config.conn_limit, config.ip_limit, config.enable_realtime
        )
        self.speed_limiter: dict[str, TokenBucket] = {}
        self.alive_list: dict[int, int] = alive_list if alive_list is not None else {}
        self._clock = clock
        self._lock = threading.RLock()

    def update_user(
        self, tag: str, added: Iterable[UserInfo], deleted: Iterable[UserInfo]
    ) -> None:
        """Drop deleted users and register added ones."""
        with self._lock:
            for user in deleted:
                key = user_tag(tag, user.uuid)
                self.user_limit_info.pop(key, None)
                self.user_online_ip.pop(key, None)
                self.uuid_to_uid.pop(user.uuid, None)
                self.alive_list.pop(user.id, None)
            for user in added:
                self.user_limit_info[user_tag(tag, user.uuid)] = _limit_info_for(user)
                self.uuid_to_uid[user.uuid] = user.id

    def add_dynamic_speed_limit(
        self, tag: str, user: UserInfo, limit: int, expire: int
    ) -> None:
        """Replace a user's limits with a temporary speed limit lasting ``expire`` seconds."""
        with self._lock:
            self.user_limit_info[user_tag(tag, user.uuid)] = UserLimitInfo(
                dynamic_speed_limit=limit,
                expire_time=int(self._clock() + expire),
            )

    def update_dynamic_speed_limit(
        self, tag: str, uuid: str, limit: int, expire: datetime
    ) -> None:
        """Set a temporary speed limit on a known user until ``expire``."""
        key = user_tag(tag, uuid)
        with self._lock:
            info = self.user_limit_info.get(key)
            if info is None:
                raise KeyError(key)
            info.dynamic_speed_limit = limit
            info.expire_time = int(expire.timestamp())

    def check_limit(
        self, tag_uuid: str, ip: str, is_tcp: bool, no_ss_udp: bool
    ) -> tuple[TokenBucket | None, bool]:
        """Admit a connection.

        Returns the user's rate bucket (or None when unlimited) and whether
        the connection must be rejected.
        """
        ip = ip.removeprefix(_MAPPED_IPV4_PREFIX)

        if self.conn_limiter.add_conn_count(tag_uuid, ip, is_tcp):
            return None, True

        with self._lock:
            info = self.user_limit_info.get(tag_uuid)
            if info is None:
                return None, True
            device_limit = info.device_limit
            uid = info.uid
            user_limit = 0
            if info.expire_time != 0 and info.expire_time < int(self._clock()):
                if info.speed_limit != 0:
                    user_limit = info.speed_limit
                    info.dynamic_speed_limit = 0
                    info.expire_time = 0
                else:
                    del self.user_limit_info[tag_uuid]
            else:
                user_limit = determine_speed_limit(
                    info.speed_limit, info.dynamic_speed_limit
                )

            if no_ss_udp and self._over_device_limit(tag_uuid, ip, uid, device_limit):
                return None, True

            limit = determine_speed_limit(self.speed_limit, user_limit) * 1000000 // 8
            if limit <= 0:
                return None, False
            bucket = self.speed_limiter.get(tag_uuid)
            if bucket is None:
                bucket = TokenBucket(limit, limit)
                self.speed_limiter[tag_uuid] = bucket
            return bucket, False

    def _over_device_limit(
        self, tag_uuid: str, ip: str, uid: int, device_limit: int
    ) -> bool:
        alive_ip = self.alive_list.get(uid, 0)
        over = 0 < device_limit <= alive_ip
        ip_map = self.user_online_ip.get(tag_uuid)
        if ip_map is not None:
            if ip not in ip_map:
                ip_map[ip] = uid
                if over:
                    del ip_map[ip]
                    return True
            return False
        self.user_online_ip[tag_uuid] = {ip: uid}
        if ip in self.old_user_online:
            if self.old_user_online[ip] == uid:
                del self.old_user_online[ip]
            return False
        if over:
            del self.user_online_ip[tag_uuid]
            return True
        return False

    def get_online_device(self) -> list[OnlineUser]:
        """Report and reset the devices seen online since the last report."""
        with self._lock:
            online: list[OnlineUser] = []
            for ip_map in self.user_online_ip.values():
                for ip, uid in ip_map.items():
                    self.old_user_online[ip] = uid
                    online.append(OnlineUser(uid=uid, ip=ip))
            self.user_online_ip.clear()
            return online

    def check_domain_rule(self, destination: str) -> bool:
        """True if the destination matches any blocked pattern."""
        return any(rule.search(destination) for rule in self.domain_rules)

    def check_protocol_rule(self, protocol: str) -> bool:
        """True if the protocol is blocked."""
        return protocol in self.protocol_rules

    def update_rule(self, rules: Rules) -> None:
        """Replace the access rules; invalid patterns raise ``re.error``."""
        compiled = [re.compile(pattern) for pattern in rules.regexp]
        with self._lock:
            self.domain_rules = compiled
            self.protocol_rules = list(rules.protocol)


_limiters: dict[str, Limiter] = {}
_registry_lock = threading.RLock()


def init() -> threading.Event:
    """Reset the registry and start periodic clearing of online IPs.

    Returns an event that stops the periodic task when set.
    """
    with _registry_lock:
        _limiters.clear()
    stop = threading.Event()

    def run() -> None:
        log.debug("ClearOnlineIP started")
        while not stop.wait(CLEAR_INTERVAL):
            clear_online_ip()

    threading.Thread(target=run, name="limiter-clear", daemon=True).start()
    return stop


def add_limiter(
    tag: str,
    config: LimitConfig,
    users: Iterable[UserInfo],
    alive_list: dict[int, int] | None,
) -> Limiter:
    """Create a limiter for a node and register it under ``tag``."""
    limiter = Limiter(config, alive_list)
    for user in users:
        limiter.uuid_to_uid[user.uuid] = user.id
        limiter.user_limit_info[user_tag(tag, user.uuid)] = _limit_info_for(user)
    with _registry_lock:
        _limiters[tag] = limiter
    return limiter


def get_limiter(tag: str) -> Limiter:
    """Return the limiter registered under ``tag``."""
    with _registry_lock:
        try:
            return _limiters[tag]
        except KeyError:
            raise LimiterNotFound(tag) from None


def delete_limiter(tag: str) -> None:
    """Forget the limiter registered under ``tag``, if any."""
    with _registry_lock:
        _limiters.pop(tag, None)


def clear_online_ip() -> None:
    """Sweep stale online IPs in every registered limiter."""
    log.debug("Clear online ip...")
    with _registry_lock:
        limiters = list(_limiters.values())
    for limiter in limiters:
        limiter.conn_limiter.clear_online_ip()
    log.debug("Clear online ip done")