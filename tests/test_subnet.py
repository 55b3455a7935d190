import ipaddress

import pytest

from dnsrelay.subnet import SubnetDetector, parse_ip_as_cidr


def test_parse_ip_as_cidr_single_address():
    network = parse_ip_as_cidr("127.0.0.1")
    assert network.num_addresses == 1
    assert ipaddress.ip_address("127.0.0.1") in network


def test_parse_ip_as_cidr_ipv6():
    network = parse_ip_as_cidr("2a10:50c0::bad1:ff")
    assert network.num_addresses == 1
    assert network.network_address == ipaddress.ip_address("2a10:50c0::bad1:ff")


def test_parse_ip_as_cidr_invalid():
    assert parse_ip_as_cidr("not-an-ip") is None


def test_detect_cidr():
    detector = SubnetDetector(["10.0.0.0/8"])
    assert detector.detect("10.1.2.3")
    assert not detector.detect("11.0.0.1")


def test_detect_bare_ip():
    detector = SubnetDetector(["127.0.0.1"])
    assert detector.detect(ipaddress.ip_address("127.0.0.1"))
    assert not detector.detect("127.0.0.2")


def test_detect_non_strict_cidr_and_ipv6():
    detector = SubnetDetector(["10.1.2.3/8", "2a10:50c0::/32"])
    assert detector.detect("10.200.0.1")
    assert detector.detect("2a10:50c0::bad1:ff")
    assert not detector.detect("2a11::1")


def test_detect_mapped_ipv4():
    detector = SubnetDetector(["10.0.0.0/8"])
    assert detector.detect("::ffff:10.1.2.3")


def test_detect_empty_and_none():
    assert not SubnetDetector([]).detect("127.0.0.1")
    assert not SubnetDetector(["127.0.0.1"]).detect(None)


def test_bad_entry_reports_index():
    with pytest.raises(ValueError, match="bad CIDR or IP at index 1"):
        SubnetDetector(["127.0.0.1", "garbage"])