"""Per-user connection and online-IP accounting."""

from __future__ import annotations

import threading
import time
from typing import Callable

# Markers stored for an online IP in realtime mode.
_TCP_WEIGHT = 2
_PACKET_WEIGHT = 1

# Seconds after which an IP seen in non-realtime mode counts as gone.
IDLE_TIMEOUT = 60.0


class ConnLimiter:
    """Tracks TCP connection counts and online IPs for each user.

    In realtime mode every TCP connection adds a weight of 2 to its IP and a
    packet-only IP is marked with 1, so packet IPs can be swept by
    :meth:`clear_online_ip` while TCP ones live until released.  Otherwise the
    time an IP was last seen is kept and idle IPs are swept.
    """

    def __init__(
        self,
        conn_limit: int,
        ip_limit: int,
        realtime: bool,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conn_limit = conn_limit
        self.ip_limit = ip_limit
        self.realtime = realtime
        self._clock = clock
        self._counts: dict[str, int] = {}
        self._ips: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def _fresh_mark(self, is_tcp: bool) -> float:
        if self.realtime:
            return _TCP_WEIGHT if is_tcp else _PACKET_WEIGHT
        return self._clock()

    def add_conn_count(self, user: str, ip: str, is_tcp: bool) -> bool:
        """Register a connection; return True if it is over a limit."""
        with self._lock:
            if self.conn_limit != 0:
                current = self._counts.get(user)
                if current is not None:
                    if current >= self.conn_limit:
                        return True
                    if is_tcp:
                        self._counts[user] = current + 1
                elif is_tcp:
                    self._counts[user] = 1

            if self.ip_limit == 0:
                return False

            ips = self._ips.get(user)
            if ips is None:
                self._ips[user] = {ip: self._fresh_mark(is_tcp)}
                return False

            if ip in ips:
                if self.realtime:
                    if is_tcp:
                        ips[ip] += _TCP_WEIGHT
                else:
                    ips[ip] = self._clock()
                return False

            if len(ips) >= self.ip_limit:
                return True
            ips[ip] = self._fresh_mark(is_tcp)
            return False

    def del_conn_count(self, user: str, ip: str) -> None:
        """Release a TCP connection; does nothing outside realtime mode."""
        if not self.realtime:
            return
        with self._lock:
            if self.conn_limit != 0:
                current = self._counts.get(user)
                if current is not None:
                    if current == 1:
                        del self._counts[user]
                    else:
                        self._counts[user] = current - 1

            if self.ip_limit == 0:
                return

            ips = self._ips.get(user)
            if ips is None or ip not in ips:
                return
            if ips[ip] == _TCP_WEIGHT:
                del ips[ip]
            else:
                ips[ip] -= _TCP_WEIGHT
            if not ips:
                del self._ips[user]

    def clear_online_ip(self) -> None:
        """Drop packet-only IPs (realtime) or idle IPs (otherwise)."""
        with self._lock:
            now = self._clock()
            for user in list(self._ips):
                ips = self._ips[user]
                for ip, mark in list(ips.items()):
                    if self.realtime:
                        if mark == _PACKET_WEIGHT:
                            del ips[ip]
                    elif mark < now - IDLE_TIMEOUT:
                        del ips[ip]
                if not ips:
                    del self._ips[user]