from __future__ import annotations

from dataclasses import dataclass, field

from mugfunnel.services.tracking.session_data import ClientSessionData, Fingerprint

ENGAGEMENT_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True)
class LeadSubmission:
    email: str
    name: str
    project_description: str
    session: ClientSessionData
    phone: str | None = None
    design_id: str | None = None
    source: str = "direct"
    engagement_level: str = "medium"
    user_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def fingerprint(self) -> Fingerprint | None:
        return self.session.fingerprint

    def missing_fields(self) -> list[str]:
        missing = []
        for name in ("email", "name", "project_description"):
            if not str(getattr(self, name) or "").strip():
                missing.append(name)
        if not self.session.session_id:
            missing.append("session_id")
        return missing

    def to_payload(self) -> dict:
        session = self.session
        return {
            "email": self.email,
            "name": self.name,
            "project_description": self.project_description,
            "phone": self.phone,
            "design_id": self.design_id,
            "source": self.source,
            "engagement_level": self.engagement_level,
            "user_id": self.user_id,
            "metadata": dict(self.metadata),
            "session": {
                "session_id": session.session_id,
                "user_agent": session.user_agent,
                "device_type": session.device_type,
                "browser_type": session.browser_type,
                "ip_address_hash": session.ip_address_hash,
                "referral_source": session.referral_source,
                "engagement_duration": session.engagement_duration,
            },
        }

    @classmethod
    def from_payload(cls, payload: dict) -> LeadSubmission:
        fields = dict(payload)
        session = ClientSessionData(**fields.pop("session"))
        return cls(session=session, **fields)
