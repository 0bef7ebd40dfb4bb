from __future__ import annotations

import hashlib

from mugfunnel.services.tracking.session_data import (
    client_ip,
    detect_browser_type,
    detect_device_type,
    extract_referral_source,
    extract_session_data,
    hash_ip_address,
    merge_client_session_data,
)


IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Mobile Safari/604.1"
EDGE = "Mozilla/5.0 (Windows NT 10.0) AppleWebKit/537.36 Chrome/120.0 Safari/537.36 Edg/120.0"


def test_client_ip_prefers_first_forwarded_address() -> None:
    assert client_ip({"x-forwarded-for": "203.0.113.9, 10.0.0.1", "x-real-ip": "10.0.0.2"}) == "203.0.113.9"
    assert client_ip({"x-real-ip": "10.0.0.2"}) == "10.0.0.2"
    assert client_ip({}) == "unknown"


def test_ip_hash_is_salted_and_unknown_passes_through() -> None:
    expected = hashlib.sha256(b"203.0.113.9:pepper").hexdigest()
    assert hash_ip_address("203.0.113.9", "pepper") == expected
    assert hash_ip_address("203.0.113.9", "other") != expected
    assert hash_ip_address("unknown", "pepper") == "unknown"


def test_device_and_browser_classification() -> None:
    assert detect_device_type(IPHONE) == "mobile"
    assert detect_device_type("Mozilla/5.0 (iPad; CPU OS 17_0)") == "tablet"
    assert detect_device_type(EDGE) == "desktop"
    assert detect_browser_type(EDGE) == "Edge"
    assert detect_browser_type(IPHONE) == "Safari"
    assert detect_browser_type("curl/8.0") == "Unknown"


def test_referral_source_ignores_self_referrals() -> None:
    assert extract_referral_source("https://www.google.com/search?q=mugs", "https://mugs.example/") == "www.google.com"
    assert extract_referral_source("https://mugs.example/designer", "https://mugs.example/") is None
    assert extract_referral_source(None, "https://mugs.example/") is None


def test_extract_session_data_then_client_overrides() -> None:
    headers = {"user-agent": IPHONE, "x-forwarded-for": "203.0.113.9", "referer": "https://instagram.com/p/1"}

    server = extract_session_data(headers, url="https://mugs.example/leads", salt="pepper", session_id="s1")
    merged = merge_client_session_data(server, session_id="client-s", engagement_duration=42)

    assert server.device_type == "mobile"
    assert server.referral_source == "instagram.com"
    assert server.fingerprint is not None
    assert merged.session_id == "client-s"
    assert merged.engagement_duration == 42
    assert merged.ip_address_hash == server.ip_address_hash


def test_missing_headers_yield_unknowns_and_no_fingerprint() -> None:
    data = extract_session_data({}, url="https://mugs.example/", salt="pepper")

    assert data.user_agent == "Unknown"
    assert data.ip_address_hash == "unknown"
    assert data.fingerprint is None
    assert data.session_id
