from __future__ import annotations

import hashlib
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, replace
from urllib.parse import urlparse

UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClientSessionData:
    session_id: str
    user_agent: str
    device_type: str
    browser_type: str
    ip_address_hash: str
    referral_source: str | None = None
    engagement_duration: int = 0

    @property
    def fingerprint(self) -> Fingerprint | None:
        return Fingerprint.build(self.ip_address_hash, self.user_agent)


@dataclass(frozen=True)
class Fingerprint:
    """Hashed client IP plus user agent; a weak signal, never built from unknowns."""

    ip_address_hash: str
    user_agent: str

    @classmethod
    def build(cls, ip_address_hash: str | None, user_agent: str | None) -> Fingerprint | None:
        if not ip_address_hash or ip_address_hash == UNKNOWN:
            return None
        if not user_agent or user_agent == "Unknown":
            return None
        return cls(ip_address_hash=ip_address_hash, user_agent=user_agent)


def client_ip(headers: Mapping[str, str]) -> str:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return UNKNOWN


def hash_ip_address(ip_address: str, salt: str) -> str:
    if not ip_address or ip_address == UNKNOWN:
        return UNKNOWN
    return hashlib.sha256(f"{ip_address}:{salt}".encode("utf-8")).hexdigest()


def detect_device_type(user_agent: str) -> str:
    ua = user_agent.lower()
    if "ipad" in ua or ("android" in ua and "mobile" not in ua) or "tablet" in ua:
        return "tablet"
    if any(token in ua for token in ("mobile", "iphone", "android", "blackberry", "windows phone")):
        return "mobile"
    return "desktop"


def detect_browser_type(user_agent: str) -> str:
    ua = user_agent.lower()
    # Order matters: Edge and Opera also advertise chrome/.
    if "edg/" in ua:
        return "Edge"
    if "opr/" in ua or "opera/" in ua:
        return "Opera"
    if "chrome/" in ua and "chromium/" not in ua:
        return "Chrome"
    if "firefox/" in ua:
        return "Firefox"
    if "safari/" in ua and "chrome/" not in ua:
        return "Safari"
    if "chromium/" in ua:
        return "Chromium"
    if "trident/" in ua or "msie " in ua:
        return "Internet Explorer"
    return "Unknown"


def extract_referral_source(referer: str | None, current_url: str) -> str | None:
    """External referrer hostname; self-referrals and junk are dropped."""
    if not referer:
        return None
    referer_host = urlparse(referer).hostname
    if not referer_host:
        return None
    if referer_host == urlparse(current_url).hostname:
        return None
    return referer_host


def extract_session_data(
    headers: Mapping[str, str],
    *,
    url: str,
    salt: str,
    session_id: str | None = None,
) -> ClientSessionData:
    user_agent = headers.get("user-agent") or "Unknown"
    return ClientSessionData(
        session_id=session_id or str(uuid.uuid4()),
        user_agent=user_agent,
        device_type=detect_device_type(user_agent),
        browser_type=detect_browser_type(user_agent),
        ip_address_hash=hash_ip_address(client_ip(headers), salt),
        referral_source=extract_referral_source(headers.get("referer"), url),
    )


def merge_client_session_data(
    server: ClientSessionData,
    *,
    session_id: str | None = None,
    engagement_duration: int | None = None,
) -> ClientSessionData:
    """Clients may supply their session id and engagement time; nothing security relevant."""
    return replace(
        server,
        session_id=session_id or server.session_id,
        engagement_duration=engagement_duration if engagement_duration else server.engagement_duration,
    )
