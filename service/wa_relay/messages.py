"""Recipient canonicalization and reminder templates."""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional, Union

USER_JID_SUFFIX = "@s.whatsapp.net"
_NON_DIGITS = re.compile(r"\D")

DateLike = Union[str, date, datetime]


class InvalidPhoneNumber(ValueError):
    pass


def canonicalize_recipient(phone_number: str, default_country_code: str = "92") -> str:
    """Turn user input into a WhatsApp user JID.

    Non-digits are stripped and ``default_country_code`` is prefixed when the
    number does not already start with it. Values that already carry a JID
    domain pass through untouched.
    """
    raw = (phone_number or "").strip()
    if "@" in raw:
        return raw
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        raise InvalidPhoneNumber(f"No digits in phone number {phone_number!r}")
    if not digits.startswith(default_country_code):
        digits = default_country_code + digits
    return f"{digits}{USER_JID_SUFFIX}"


def display_number(phone_number: str) -> str:
    """Digits and a leading ``+`` only, for echoing back to callers."""
    return re.sub(r"[^\d+]", "", phone_number or "")


def _parse_date(value: DateLike) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def format_long_date(value: DateLike) -> str:
    """``2026-01-05`` -> ``January 5, 2026``; unparseable input is returned as-is."""
    parsed = _parse_date(value)
    if parsed is None:
        return str(value)
    return f"{parsed:%B} {parsed.day}, {parsed.year}"


def days_until(value: DateLike, today: Optional[date] = None) -> Optional[int]:
    parsed = _parse_date(value)
    if parsed is None:
        return None
    return (parsed - (today or date.today())).days


def format_expiry_message(
    *,
    product_name: str,
    expiry_date: DateLike,
    days_until_expiry: int,
    product_category: Optional[str] = None,
    brand_url: str = "https://expirel.com",
) -> str:
    if days_until_expiry == 0:
        expiry_status = "*expires TODAY* ⏰"
    elif days_until_expiry == 1:
        expiry_status = "*expires TOMORROW* ⚠️"
    else:
        expiry_status = f"*expires in {days_until_expiry} days*"

    urgent = days_until_expiry <= 3
    urgency_emoji = "🚨" if urgent else "⏰"
    category = f"\n📦 *Category:* {product_category}" if product_category else ""
    tip = (
        "⚠️ *URGENT:* Please use this item soon to avoid waste!"
        if urgent
        else "💡 *Tip:* Plan to use this item in the coming days."
    )

    # the link stays alone on its line so WhatsApp renders a preview
    return (
        f"{urgency_emoji} *EXPIRY REMINDER*\n"
        "\n"
        f"🏷️ *Product:* {product_name}{category}\n"
        f"📅 *Expiry Date:* {format_long_date(expiry_date)}\n"
        f"⏳ *Status:* {expiry_status}\n"
        "\n"
        f"{tip}\n"
        "\n"
        "━━━━━━━━━━━━━━━━\n"
        "\n"
        "_Expirel - Smart expiry tracking made simple_\n"
        "\n"
        "📱 *Manage your expiry alerts:*\n"
        "\n"
        f"{brand_url}\n"
    )


def format_habit_message(
    *,
    habit_name: str,
    habit_icon: Optional[str] = None,
    habit_description: Optional[str] = None,
    user_name: Optional[str] = None,
) -> str:
    greeting = f"Hi {user_name}! 👋" if user_name else "Hi there! 👋"
    description = f"\n_{habit_description}_\n" if habit_description else ""
    return (
        f"{greeting}\n"
        "\n"
        "🎯 *Habit Reminder*\n"
        "\n"
        f"{habit_icon or '📝'} *{habit_name}*\n"
        f"{description}\n"
        "⏰ It's time to complete your habit!\n"
        "\n"
        "Every small step counts towards building a better you. Let's keep the momentum going! 🌟\n"
        "\n"
        "💪 *Stay consistent and achieve your goals!*\n"
        "\n"
        "_Reply STOP to unsubscribe from habit reminders._"
    )


__all__ = [
    "InvalidPhoneNumber",
    "USER_JID_SUFFIX",
    "canonicalize_recipient",
    "days_until",
    "display_number",
    "format_expiry_message",
    "format_habit_message",
    "format_long_date",
]
