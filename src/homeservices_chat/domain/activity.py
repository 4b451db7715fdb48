"""Human-readable labels derived at render time, never stored."""

from datetime import date, datetime, timedelta
from typing import Optional

from .models import Contact, utcnow

ONLINE = "online"
RECENT = "recent"
AWAY = "away"
OFFLINE = "offline"


def _minutes_since(last_seen: datetime, now: Optional[datetime]) -> int:
    now = now or utcnow()
    return int((now - last_seen).total_seconds() // 60)


def activity_label(contact: Contact, now: Optional[datetime] = None) -> str:
    """Describe how recently a contact was active."""
    if contact.is_online:
        return "Online"
    if contact.last_seen_at is None:
        return "Offline"

    minutes = _minutes_since(contact.last_seen_at, now)
    if minutes < 5:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if minutes < 24 * 60:
        return f"{minutes // 60}h ago"
    return f"{minutes // (24 * 60)}d ago"


def activity_tone(contact: Contact, now: Optional[datetime] = None) -> str:
    """Coarse status bucket a presenter can map to a colour."""
    if contact.is_online:
        return ONLINE
    if contact.last_seen_at is None:
        return OFFLINE
    minutes = _minutes_since(contact.last_seen_at, now)
    if minutes < 5:
        return ONLINE
    if minutes < 24 * 60:
        return RECENT
    return AWAY


def date_label(day: date, today: date) -> str:
    """Label for a date group: Today, Yesterday or the long en-US form."""
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"
