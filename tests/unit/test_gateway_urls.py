"""
tests/unit/test_gateway_urls.py — URL normalisation and default names
"""

import pytest

from gateway.urls import derive_gateway_name, normalize_url, to_http_url, to_ws_url


class TestNormalizeUrl:
    @pytest.mark.parametrize("raw, expected", [
        ("10.0.0.5:18789", "http://10.0.0.5:18789"),
        ("10.0.0.5:18789/", "http://10.0.0.5:18789"),
        ("localhost:3000//", "http://localhost:3000"),
        ("  gw.example.com  ", "http://gw.example.com"),
        ("HTTP://gw.example.com/", "http://gw.example.com"),
        ("HTTPS://gw.example.com", "https://gw.example.com"),
        ("wss://gw.example.com/ws/", "wss://gw.example.com/ws"),
    ])
    def test_normalizes(self, raw, expected):
        assert normalize_url(raw) == expected

    def test_host_case_preserved(self):
        assert normalize_url("http://GW.example.com") == "http://GW.example.com"

    def test_idempotent(self):
        once = normalize_url("Http://gw:1/")
        assert normalize_url(once) == once


class TestSchemeRewrite:
    def test_http_to_ws(self):
        assert to_ws_url("http://gw:18789") == "ws://gw:18789"

    def test_https_to_wss(self):
        assert to_ws_url("https://gw") == "wss://gw"

    def test_ws_passthrough(self):
        assert to_ws_url("wss://gw") == "wss://gw"

    def test_ws_to_http(self):
        assert to_http_url("ws://gw:1") == "http://gw:1"
        assert to_http_url("wss://gw") == "https://gw"

    def test_http_passthrough(self):
        assert to_http_url("https://gw") == "https://gw"


class TestDeriveGatewayName:
    def test_localhost_with_port(self):
        assert derive_gateway_name("http://localhost:18789") == "Local Gateway (:18789)"

    def test_loopback_without_port(self):
        assert derive_gateway_name("http://127.0.0.1") == "Local Gateway (:80)"

    def test_remote_host(self):
        assert derive_gateway_name("http://gw.example.com:8080") == "gw.example.com"

    def test_unparseable(self):
        assert derive_gateway_name("http://") == "Gateway"
        assert derive_gateway_name("http://host:notaport") == "Gateway"
