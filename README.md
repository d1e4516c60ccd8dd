# nodeguard

Building blocks for a proxy node that serves many users: deciding whether a
new connection may go ahead and how fast it may run, counting the bytes each
user moves, working out which protocol and domain a connection carries, and
preparing user accounts, outbound and DNS settings for the node. The package
has no dependencies outside the standard library.

## Modules

- `nodeguard.conn` — `ConnLimiter` tracks TCP connection counts and online IP
  addresses per user. In realtime mode TCP connections are counted up by
  `add_conn_count` and down by `del_conn_count`, and `clear_online_ip` drops
  packet-only addresses; otherwise the time each address was last seen is
  kept and `clear_online_ip` drops those idle for more than a minute.
- `nodeguard.bucket` — `TokenBucket`, refilled by `quantum` tokens every
  `fill_interval` seconds up to `capacity`, with `available()`,
  `take_available(count)` and a blocking `wait(count)` that returns the time
  slept.
- `nodeguard.limiter` — `Limiter` and a registry of limiters keyed by inbound
  tag: `init`, `add_limiter`, `get_limiter`, `delete_limiter` and
  `clear_online_ip`. A limiter combines node and user speed limits, dynamic
  speed limits with an expiry (`add_dynamic_speed_limit`,
  `update_dynamic_speed_limit`), device limits, connection and IP limits, and
  domain and protocol block rules (`update_rule`, `check_domain_rule`,
  `check_protocol_rule`). `get_limiter` raises `LimiterNotFound` for an
  unknown tag; `update_dynamic_speed_limit` raises `KeyError` for an unknown
  user.
- `nodeguard.accounts` — builds `UserAccount` values for vmess, vless, trojan
  and shadowsocks inbounds (`build_users` and `build_vmess_user`,
  `build_vless_user`, `build_trojan_user`, `build_ss_user`), maps cipher names
  to `CipherType` (`cipher_from_string`), derives Shadowsocks 2022 keys from
  user ids (`ss_key_length`, `sing_ss_password`) and names a user's traffic
  counters (`traffic_counter_names`).
- `nodeguard.outbound` — `build_freedom_outbound` returns the direct outbound
  of a node as a dict; `process_fallback` turns ALPN fallbacks with textual
  ports into `FallbackServer` values and raises `ValueError` for a bad port.
- `nodeguard.dnsconfig` — `build_dns_config` renders a node's DNS settings to
  JSON bytes, `save_dns_config` writes them to an existing file only when they
  differ, and `update_dns_config` does both. Content that cannot be understood
  raises `DNSConfigError`; a missing file raises the usual `OSError`.
- `nodeguard.stats` — `Counter`, a `StatsManager` holding counters by name
  (with `user_traffic` to read or reset a user's uplink and downlink), and
  `SizeStatWriter`, which counts bytes as they pass to another writer.
  `DiscardWriter` drops what it is given.
- `nodeguard.sniffer` — `Sniffer` runs `ProtocolSniffer`s over a payload
  (`sniff`) or the connection metadata (`sniff_metadata`), raising `NoClue`
  while more data is needed and `UnknownContent` when nothing matches. With a
  fake DNS engine it adds the sniffers from `make_fake_dns_sniffer` and
  `make_fake_dns_then_others`. Results are `SniffResult`,
  `FakeDNSSniffResult`, `DNSThenOthersSniffResult` and `CompositeResult`.
- `nodeguard.override` — `sniff` combines metadata and content sniffing over a
  `CachedReader`, which keeps the sniffed bytes so they are read again
  afterwards; `should_override` decides from a `SniffingRequest` whether a
  sniffed domain replaces the destination. Sniffing that does not decide in
  time raises `SniffingTimeout`.
- `nodeguard.dispatch` — `Dispatcher` builds in-memory links for a user's
  `InboundSession` with speed limits and traffic counters applied
  (`get_link`), applies access rules (`check_rules`), picks an outbound
  handler (`pick_handler`) and gives back a TCP slot (`release`). A refused
  connection raises `DispatchRejected`. `detour_label` renders the detour text
  of an access log line.

## Speed limits

Two limits combine into the smaller non-zero one; zero means "no limit":

```python
from nodeguard.limiter import determine_speed_limit

determine_speed_limit(10, 0)   # 10
determine_speed_limit(10, 5)   # 5
determine_speed_limit(0, 0)    # 0
```

Limits are in Mbit/s; a connection that is allowed through gets a
`TokenBucket` whose capacity is the limit in bytes per second.

## Checking a connection

```python
from nodeguard.limiter import LimitConfig, UserInfo, add_limiter, init, user_tag

stop = init()  # starts clearing stale online IPs every three minutes
node = add_limiter(
    "node1",
    LimitConfig(speed_limit=100, ip_limit=3),
    [UserInfo(id=1, uuid="a3b1c2d4-0000-4000-8000-000000000001")],
    {},
)

key = user_tag("node1", "a3b1c2d4-0000-4000-8000-000000000001")
bucket, reject = node.check_limit(key, "203.0.113.7", True, True)
# reject is False; bucket.capacity == 12_500_000 bytes per second

stop.set()  # stops the periodic clearing
```

`node.get_online_device()` returns the `OnlineUser`s seen since the last call
and resets the list; `node.update_rule(Rules(regexp=[...], protocol=[...]))`
replaces the rules used by `check_domain_rule` and `check_protocol_rule`.

## Counting traffic

```python
from nodeguard.stats import DiscardWriter, SizeStatWriter, StatsManager

stats = StatsManager()
counter = stats.get_or_register_counter("user>>>node1|id>>>traffic>>>uplink")
writer = SizeStatWriter(counter, DiscardWriter())
writer.write_multi_buffer([b"abcd", b"efg"])
counter.value()  # 7
```

## What it does not do

nodeguard is a library, not a running node. It has no command, opens no
sockets, talks to no management panel and runs no proxy protocol: accounts
and outbounds are returned as plain values for a proxy engine to use, and the
dispatcher's links are in-memory pipes. Sniffers for particular protocols
(HTTP, TLS and the like) are not included; they are supplied as
`ProtocolSniffer` functions.

## Tests

The test suite uses pytest and is installed with the `test` extra.