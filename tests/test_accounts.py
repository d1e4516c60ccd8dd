import base64

import pytest

from nodeguard.accounts import (
    CipherType,
    build_ss_user,
    build_trojan_user,
    build_users,
    build_vless_user,
    build_vmess_user,
    cipher_from_string,
    sing_ss_password,
    ss_key_length,
    traffic_counter_names,
)
from nodeguard.limiter import UserInfo, user_tag

UUID = "0f8fad5b-d9cb-469f-a165-70867728950e"


@pytest.fixture
def user():
    return UserInfo(id=7, uuid=UUID)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("aes-128-gcm", CipherType.AES_128_GCM),
        ("AEAD_AES_128_GCM", CipherType.AES_128_GCM),
        ("aes-256-gcm", CipherType.AES_256_GCM),
        ("aead_aes_256_gcm", CipherType.AES_256_GCM),
        ("chacha20-poly1305", CipherType.CHACHA20_POLY1305),
        ("aead_chacha20_poly1305", CipherType.CHACHA20_POLY1305),
        ("Chacha20-IETF-Poly1305", CipherType.CHACHA20_POLY1305),
        ("none", CipherType.NONE),
        ("plain", CipherType.NONE),
        ("rc4-md5", CipherType.UNKNOWN),
    ],
)
def test_cipher_from_string(name, expected):
    assert cipher_from_string(name) is expected


@pytest.mark.parametrize(
    "cipher, expected",
    [
        ("2022-blake3-aes-128-gcm", 16),
        ("2022-blake3-aes-256-gcm", 32),
        ("2022-blake3-chacha20-poly1305", 32),
        ("aes-128-gcm", 0),
    ],
)
def test_ss_key_length(cipher, expected):
    assert ss_key_length(cipher) == expected


def test_classic_ss_user(user):
    account = build_ss_user("node", user, "aes-256-gcm", "")
    assert account.protocol == "shadowsocks"
    assert account.email == user_tag("node", UUID)
    assert account.settings["password"] == UUID
    assert account.settings["cipher"] is CipherType.AES_256_GCM
    assert account.level == 0


@pytest.mark.parametrize(
    "cipher", ["2022-blake3-aes-128-gcm", "2022-blake3-aes-256-gcm", "2022-blake3-chacha20-poly1305"]
)
def test_ss2022_user_key_is_uuid_prefix(user, cipher):
    account = build_ss_user("node", user, cipher, "serverkey")
    assert account.protocol == "shadowsocks2022"
    key = base64.b64decode(account.settings["key"])
    assert key == UUID.encode()[: ss_key_length(cipher)]


def test_ss2022_user_with_short_uuid_raises():
    short = UserInfo(id=1, uuid="abc")
    with pytest.raises(ValueError):
        build_ss_user("node", short, "2022-blake3-aes-256-gcm", "serverkey")


def test_trojan_vmess_vless_users(user):
    trojan = build_trojan_user("t", user)
    assert (trojan.protocol, trojan.settings["password"]) == ("trojan", UUID)
    vmess = build_vmess_user("t", user)
    assert vmess.settings == {"id": UUID, "security": "auto"}
    vless = build_vless_user("t", user, "xtls-rprx-vision")
    assert vless.settings == {"id": UUID, "flow": "xtls-rprx-vision"}
    assert {trojan.email, vmess.email, vless.email} == {user_tag("t", UUID)}


def test_build_users_dispatches_by_type(user):
    other = UserInfo(id=8, uuid="another-user-identifier-0000000000")
    accounts = build_users("vless", "n", [user, other], flow="f")
    assert [a.protocol for a in accounts] == ["vless", "vless"]
    assert [a.settings["id"] for a in accounts] == [UUID, other.uuid]
    ss = build_users("shadowsocks", "n", [user], cipher="aes-128-gcm")
    assert ss[0].settings["cipher"] is CipherType.AES_128_GCM


def test_build_users_rejects_unknown_type(user):
    with pytest.raises(ValueError, match="unsupported node type: tuic"):
        build_users("tuic", "n", [user])


def test_sing_ss_password():
    assert sing_ss_password(UUID, "aes-128-gcm") == UUID
    assert sing_ss_password(UUID, "2022-blake3-chacha20-poly1305") == UUID
    derived = sing_ss_password(UUID, "2022-blake3-aes-128-gcm")
    assert base64.b64decode(derived) == UUID.encode()[:16]
    derived = sing_ss_password(UUID, "2022-blake3-aes-256-gcm")
    assert base64.b64decode(derived) == UUID.encode()[:32]


def test_traffic_counter_names():
    up, down = traffic_counter_names("node", UUID)
    email = user_tag("node", UUID)
    assert up == "user>>>" + email + ">>>traffic>>>uplink"
    assert down == "user>>>" + email + ">>>traffic>>>downlink"