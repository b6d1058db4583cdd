"""
Public widget configuration and origin allowlist policy.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from .schemas import OrganizationPlan, PublicWidgetConfigOut

DEFAULT_DISPLAY_NAME = "Support Assistant"
DEFAULT_WELCOME_MESSAGE = "Hi! How can I help you today?"
DEFAULT_PRIMARY_COLOR = "#2563eb"
DEFAULT_TONE_SETTING = "friendly, concise, and professional"

CHAT_EXPOSED_HEADERS = "X-Conversation-Id, X-Intent, X-Source-Count"


@dataclass
class OrganizationProfile:
    id: str
    slug: str
    name: str
    plan: OrganizationPlan
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WidgetConfigRecord:
    org_id: str
    display_name: Optional[str] = None
    welcome_message: Optional[str] = None
    primary_color: Optional[str] = None
    position: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: Optional[bool] = None
    allowed_domains: Optional[List[str]] = None


@dataclass
class PublicWidgetConfig:
    org_id: str
    display_name: str
    welcome_message: str
    primary_color: str
    position: str
    avatar_url: Optional[str]
    is_active: bool
    allowed_domains: List[str]
    powered_by: bool

    def to_public(self) -> PublicWidgetConfigOut:
        """Fields safe to hand to the embed script; activation and allowlist stay server-side."""
        return PublicWidgetConfigOut(
            org_id=self.org_id,
            display_name=self.display_name,
            welcome_message=self.welcome_message,
            primary_color=self.primary_color,
            position=self.position,
            avatar_url=self.avatar_url,
            powered_by=self.powered_by,
        )


def _trimmed_or(value: Optional[str], default: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def clean_allowed_domains(allowed_domains: Optional[List[Any]]) -> List[str]:
    if not isinstance(allowed_domains, list):
        return []
    return [d.strip() for d in allowed_domains if isinstance(d, str) and d.strip()]


def build_public_widget_config(
    organization: OrganizationProfile,
    record: Optional[WidgetConfigRecord],
) -> PublicWidgetConfig:
    """Merge the organization plan with the (possibly missing) widget row, filling defaults."""
    record = record or WidgetConfigRecord(org_id=organization.id)
    return PublicWidgetConfig(
        org_id=organization.id,
        display_name=_trimmed_or(record.display_name, DEFAULT_DISPLAY_NAME),
        welcome_message=_trimmed_or(record.welcome_message, DEFAULT_WELCOME_MESSAGE),
        primary_color=_trimmed_or(record.primary_color, DEFAULT_PRIMARY_COLOR),
        position="bottom-left" if record.position == "bottom-left" else "bottom-right",
        avatar_url=_trimmed_or(record.avatar_url, None),
        is_active=True if record.is_active is None else bool(record.is_active),
        allowed_domains=clean_allowed_domains(record.allowed_domains),
        powered_by=organization.plan == "free",
    )


def resolve_tone_setting(settings: Optional[Dict[str, Any]]) -> str:
    settings = settings or {}
    for key in ("tone_setting", "toneSetting"):
        value = settings.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return DEFAULT_TONE_SETTING


# ==================== Origin policy ====================

def parse_host_from_allowed_domain(entry: str) -> Optional[str]:
    """Host part of an allowlist entry: bare host, host:port, host/path or full URL."""
    candidate = entry.strip().lower()
    if not candidate:
        return None

    if candidate.startswith(("http://", "https://")):
        try:
            return urlsplit(candidate).hostname or None
        except ValueError:
            return None

    host = candidate.split("/")[0].split(":")[0]
    return host or None


def _origin_host(origin: str) -> Optional[str]:
    try:
        parts = urlsplit(origin.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    return parts.hostname.lower()


def is_origin_allowed(origin: Optional[str], allowed_domains: List[str]) -> bool:
    """An empty allowlist admits every origin; otherwise the Origin host must match an entry."""
    if not allowed_domains:
        return True
    if not origin:
        return False

    origin_host = _origin_host(origin)
    if not origin_host:
        return False

    for entry in allowed_domains:
        allowed_host = parse_host_from_allowed_domain(entry)
        if not allowed_host:
            continue
        if allowed_host.startswith("*."):
            suffix = allowed_host[2:]
            if origin_host == suffix or origin_host.endswith(f".{suffix}"):
                return True
        elif origin_host == allowed_host:
            return True
    return False


def build_cors_headers(origin: Optional[str], allow_origin: bool) -> Dict[str, str]:
    if not origin or not allow_origin:
        return {"Vary": "Origin"}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "600",
        "Vary": "Origin",
    }


def build_chat_cors_headers(origin: Optional[str], allow_origin: bool) -> Dict[str, str]:
    headers = build_cors_headers(origin, allow_origin)
    if "Access-Control-Allow-Origin" in headers:
        headers["Access-Control-Expose-Headers"] = CHAT_EXPOSED_HEADERS
    return headers
