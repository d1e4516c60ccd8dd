import pytest

from nodeguard.sniffer import (
    CompositeResult,
    DNSThenOthersSniffResult,
    FakeDNSSniffResult,
    Network,
    NoClue,
    ProtocolSniffer,
    SniffResult,
    Sniffer,
    UnknownContent,
    make_fake_dns_sniffer,
    make_fake_dns_then_others,
)


class Engine:
    def __init__(self, domains, pool):
        self.domains = domains
        self.pool = pool

    def get_domain_from_fake_dns(self, address):
        return self.domains.get(address, "")

    def is_ip_in_ip_pool(self, address):
        return address in self.pool


def prefix_sniffer(prefix, name, network=Network.TCP):
    def sniff(payload, target):
        if payload is None or len(payload) < len(prefix):
            raise NoClue()
        if payload.startswith(prefix):
            return SniffResult(name, "site.example.com")
        raise ValueError("not it")

    return ProtocolSniffer(sniff=sniff, network=network)


def test_sniff_returns_matching_result():
    sniffer = Sniffer([prefix_sniffer(b"GET", "http"), prefix_sniffer(b"\x16", "tls")])
    result = sniffer.sniff(b"\x16\x03\x01", Network.TCP)
    assert result == SniffResult("tls", "site.example.com")


def test_sniff_skips_other_network():
    sniffer = Sniffer([prefix_sniffer(b"GET", "http", Network.UDP)])
    with pytest.raises(UnknownContent):
        sniffer.sniff(b"GET /", Network.TCP)


def test_sniff_keeps_only_pending_sniffers():
    waiting = prefix_sniffer(b"GETX", "http")
    failing = prefix_sniffer(b"\x16", "tls")
    sniffer = Sniffer([waiting, failing])
    with pytest.raises(NoClue):
        sniffer.sniff(b"GE", Network.TCP)
    assert sniffer.sniffers == [waiting]
    assert sniffer.sniff(b"GETX /", Network.TCP).protocol == "http"


def test_metadata_fake_dns_domain():
    engine = Engine({"198.18.0.1": "site.example.com"}, {"198.18.0.1"})
    sniffer = Sniffer([], engine, target=(Network.TCP, "198.18.0.1"))
    result = sniffer.sniff_metadata()
    assert result == FakeDNSSniffResult("site.example.com")
    assert result.protocol == "fakedns"


def test_sniffer_order_with_fake_dns():
    content = prefix_sniffer(b"GET", "http")
    sniffer = Sniffer([content], Engine({}, set()))
    assert len(sniffer.sniffers) == 3
    assert sniffer.sniffers[1] is content
    assert sniffer.sniffers[2].metadata
    assert not sniffer.sniffers[0].metadata


def test_fake_dns_sniffer_requires_engine():
    with pytest.raises(ValueError):
        make_fake_dns_sniffer(None)


def test_fake_dns_sniffer_reports_pool_membership():
    fake = make_fake_dns_sniffer(Engine({}, {"198.18.0.2"}))
    with pytest.raises(NoClue) as info:
        fake.sniff(None, (Network.UDP, "198.18.0.2"))
    assert info.value.address_in_range is True


def test_then_others_in_pool():
    fake = make_fake_dns_sniffer(Engine({}, {"198.18.0.2"}))
    combined = make_fake_dns_then_others(fake, [prefix_sniffer(b"\x16", "tls")])
    result = combined.sniff(b"\x16\x03", (Network.TCP, "198.18.0.2"))
    assert isinstance(result, DNSThenOthersSniffResult)
    assert result.protocol == "fakedns+others"
    assert result.domain == "site.example.com"
    assert result.protocol_original_name == "tls"
    assert result.is_proto_subset_of("tls1.3")
    assert not result.is_proto_subset_of("http")


def test_then_others_outside_pool():
    fake = make_fake_dns_sniffer(Engine({}, set()))
    combined = make_fake_dns_then_others(fake, [prefix_sniffer(b"\x16", "tls")])
    with pytest.raises(NoClue):
        combined.sniff(b"\x16\x03", (Network.TCP, "10.0.0.1"))


def test_then_others_passes_through_fake_result():
    fake = make_fake_dns_sniffer(Engine({"198.18.0.3": "a.example.com"}, set()))
    combined = make_fake_dns_then_others(fake, [])
    assert combined.sniff(None, (Network.TCP, "198.18.0.3")) == FakeDNSSniffResult(
        "a.example.com"
    )


def test_composite_result():
    meta = FakeDNSSniffResult("a.example.com")
    content = SniffResult("http", "b.example.com")
    result = CompositeResult(meta, content)
    assert result.protocol == "http"
    assert result.domain == "a.example.com"
    assert result.protocol_for_domain_result() == "fakedns"