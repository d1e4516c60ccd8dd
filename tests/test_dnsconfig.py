import json

import pytest

from nodeguard.dnsconfig import (
    DNSConfigError,
    build_dns_config,
    save_dns_config,
    update_dns_config,
)


def test_nothing_to_build():
    assert build_dns_config(None, None) is None
    assert build_dns_config(b"", {}) is None


def test_raw_json_is_reindented_with_one_space():
    out = build_dns_config(b'{"servers":["1.1.1.1"],"tag":"x"}', None)
    assert json.loads(out) == {"servers": ["1.1.1.1"], "tag": "x"}
    lines = out.decode().splitlines()
    assert lines[0] == "{"
    assert lines[1].startswith(' "servers"')


def test_raw_json_takes_precedence_over_map():
    out = build_dns_config('{"a": 1}', {"x": {"address": "8.8.8.8"}})
    assert json.loads(out) == {"a": 1}


def test_invalid_raw_json():
    with pytest.raises(DNSConfigError):
        build_dns_config(b"{not json", None)


def test_map_splits_host_and_port():
    out = build_dns_config(None, {"a": {"address": "8.8.8.8:53"}})
    doc = json.loads(out)
    assert doc["tag"] == "dns_inbound"
    assert doc["servers"] == [
        "1.1.1.1",
        "localhost",
        {"address": "8.8.8.8", "port": 53},
    ]


def test_map_bracketed_ipv6():
    out = build_dns_config(None, {"a": {"address": "[2001:db8::1]:5353"}})
    server = json.loads(out)["servers"][2]
    assert server == {"address": "2001:db8::1", "port": 5353}


def test_map_leaves_urls_alone():
    url = "https://dns.example.com/dns-query"
    out = build_dns_config(None, {"a": {"address": url, "domains": ["x"]}})
    assert json.loads(out)["servers"][2] == {"address": url, "domains": ["x"]}


def test_map_bad_port_becomes_zero():
    out = build_dns_config(None, {"a": {"address": "dns.example.com:abc"}})
    server = json.loads(out)["servers"][2]
    assert server["address"] == "dns.example.com"
    assert server["port"] == 0


def test_map_unbracketed_ipv6_is_error():
    with pytest.raises(DNSConfigError):
        build_dns_config(None, {"a": {"address": "2001:db8::1"}})


def test_map_does_not_mutate_input():
    entry = {"address": "8.8.8.8:53"}
    build_dns_config(None, {"a": entry})
    assert entry == {"address": "8.8.8.8:53"}


def test_save_writes_when_different(tmp_path):
    path = tmp_path / "dns.json"
    path.write_bytes(b"{}")
    assert save_dns_config(b'{"servers": []}', path) is True
    assert path.read_bytes() == b'{"servers": []}'
    assert save_dns_config(b'{"servers": []}', path) is False


def test_save_rejects_invalid_and_keeps_file(tmp_path):
    path = tmp_path / "dns.json"
    path.write_bytes(b"{}")
    with pytest.raises(DNSConfigError):
        save_dns_config(b"[1, 2]", path)
    assert path.read_bytes() == b"{}"


def test_save_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        save_dns_config(b"{}", tmp_path / "absent.json")


def test_update_round_trip(tmp_path):
    path = tmp_path / "dns.json"
    path.write_bytes(b"")
    assert update_dns_config(None, {"a": {"address": "8.8.8.8:53"}}, path) is True
    doc = json.loads(path.read_bytes())
    assert doc["servers"][2]["address"] == "8.8.8.8"
    assert update_dns_config(None, {"a": {"address": "8.8.8.8:53"}}, path) is False


def test_update_without_settings_leaves_file(tmp_path):
    path = tmp_path / "dns.json"
    path.write_bytes(b"keep")
    assert update_dns_config(None, None, path) is False
    assert path.read_bytes() == b"keep"