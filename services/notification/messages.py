"""
services/notification/messages.py
Message templates and formatting for missionary notifications.
Plain text goes to SMS/WhatsApp/Messenger; email gets the same text
wrapped in a small HTML layout.
"""

import math
from dataclasses import dataclass
from datetime import date
from enum import Enum
from html import escape
from typing import Iterable, Optional


class MessageType(str, Enum):
    MEAL_CREATED = "meal_created"
    MEAL_UPDATED = "meal_updated"
    MEAL_CANCELLED = "meal_cancelled"
    BEFORE_MEAL = "before_meal"
    DAY_OF = "day_of"
    WEEKLY_SUMMARY = "weekly_summary"
    CONSENT_REQUEST = "consent_request"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    CUSTOM = "custom"
    ADMIN_CANCELLATION = "admin_cancellation"
    TRANSFER_REMINDER = "transfer_reminder"


@dataclass
class OutboundMessage:
    message_type: MessageType
    subject: str
    text: str
    html: Optional[str] = None


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    MessageType.MEAL_CREATED: {
        "subject": "🍽️ New meal scheduled - {long_date}",
        "text": "New meal scheduled: {short_date} at {time} with {host}.{menu}{notes}",
    },
    MessageType.MEAL_UPDATED: {
        "subject": "🍽️ Meal updated - {long_date}",
        "text": "Meal updated: {short_date} at {time} with {host}.{menu}{notes}",
    },
    MessageType.MEAL_CANCELLED: {
        "subject": "❌ Meal cancelled - {long_date}",
        "text": "Meal cancelled: {short_date} at {time} with {host}.{reason}",
    },
    MessageType.ADMIN_CANCELLATION: {
        "subject": "Meal cancelled for {missionary} - {long_date}",
        "text": "Meal cancelled: {short_date} at {time} with {host} for missionary {missionary}.{reason}",
    },
    MessageType.BEFORE_MEAL: {
        "subject": "🍽️ Meal Reminder - {long_date}",
        "text": "MEAL REMINDER: {meal} See you soon!",
    },
    MessageType.CONSENT_REQUEST: {
        "subject": "Meal notification consent",
        "text": (
            "This is the Ward Missionary Meal Scheduler. To receive meal notifications, "
            "reply with YES {code}. Reply STOP at any time to opt out of messages. "
            "Msg & data rates may apply."
        ),
    },
    MessageType.EMAIL_VERIFICATION: {
        "subject": "Verify Your Email - Missionary Meal Scheduler",
        "text": (
            "Your verification code is {code}. Enter this 4-digit code in the application "
            "to verify your email address. This code will expire in {minutes} minutes."
        ),
    },
    MessageType.PASSWORD_RESET: {
        "subject": "Missionary portal password reset",
        "text": (
            "Your password has been reset. Your new temporary password is: {password}\n\n"
            "Please log in to the missionary portal and change your password immediately."
        ),
    },
    MessageType.TRANSFER_REMINDER: {
        "subject": "🔄 Missionary Transfer Reminder - {missionary}",
        "text": (
            "Transfer Reminder - {missionary}\n\n"
            "Type: {type}\nTransfer Date: {transfer_date}\n"
            "Current Phone: {phone}\nCurrent Email: {email}\nWhatsApp: {whatsapp}\n\n"
            "Please contact the missionary to update their phone number, email address, "
            "WhatsApp number, dietary restrictions and next transfer date.\n\n"
            "Update at: {app_url}"
        ),
    },
}

FOOTER = "This is an automated message from the Ward Missionary Meal Scheduler."


# ── Formatting helpers ────────────────────────────────────────

def format_time_12h(hhmm: str) -> str:
    """'18:00' -> '6:00 PM'."""
    hours, minutes = hhmm.split(":")
    hour = int(hours)
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}:{minutes} {suffix}"


def format_long_date(day: date) -> str:
    """Sunday, June 1, 2025"""
    return f"{day:%A, %B} {day.day}, {day.year}"


def format_short_date(day: date) -> str:
    """Sunday, June 1"""
    return f"{day:%A, %B} {day.day}"


def describe_meal(meal) -> str:
    message = (
        f"Meal scheduled at {meal.host_name}'s home on {format_long_date(meal.date)} "
        f"at {format_time_12h(meal.start_time)}."
    )
    if meal.meal_description:
        message += f" Menu: {meal.meal_description}."
    if meal.special_notes:
        message += f" Notes: {meal.special_notes}"
    return message


def _meal_vars(meal) -> dict:
    return {
        "long_date": format_long_date(meal.date),
        "short_date": format_short_date(meal.date),
        "time": format_time_12h(meal.start_time),
        "host": meal.host_name,
        "menu": f" Menu: {meal.meal_description}" if meal.meal_description else "",
        "notes": f" Notes: {meal.special_notes}" if meal.special_notes else "",
        "meal": describe_meal(meal),
    }


def render_html(title: str, greeting_name: Optional[str], body: str) -> str:
    paragraphs = "".join(
        f"<p>{escape(chunk).replace(chr(10), '<br>')}</p>" for chunk in body.split("\n\n") if chunk
    )
    greeting = f"<p><strong>Dear {escape(greeting_name)},</strong></p>" if greeting_name else ""
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #2563eb;">{escape(title)}</h2>'
        f"{greeting}{paragraphs}"
        f'<hr><p style="font-size: 12px; color: #666;">{FOOTER}</p>'
        "</div>"
    )


def _build(message_type: MessageType, name: Optional[str], **vars_) -> OutboundMessage:
    template = TEMPLATES[message_type]
    subject = template["subject"].format(**vars_)
    text = template["text"].format(**vars_)
    return OutboundMessage(message_type, subject, text, render_html(subject, name, text))


# ── Message builders ──────────────────────────────────────────

def meal_created_message(missionary, meal) -> OutboundMessage:
    return _build(MessageType.MEAL_CREATED, missionary.name, **_meal_vars(meal))


def meal_updated_message(missionary, meal) -> OutboundMessage:
    return _build(MessageType.MEAL_UPDATED, missionary.name, **_meal_vars(meal))


def meal_cancelled_message(missionary, meal, reason: Optional[str]) -> OutboundMessage:
    return _build(
        MessageType.MEAL_CANCELLED,
        missionary.name,
        reason=f" Reason: {reason}" if reason else "",
        **_meal_vars(meal),
    )


def admin_cancellation_message(missionary_name: str, meal, reason: Optional[str]) -> OutboundMessage:
    return _build(
        MessageType.ADMIN_CANCELLATION,
        None,
        missionary=missionary_name,
        reason=f" Reason: {reason}" if reason else "",
        **_meal_vars(meal),
    )


def before_meal_message(missionary, meal) -> OutboundMessage:
    return _build(MessageType.BEFORE_MEAL, missionary.name, **_meal_vars(meal))


def _numbered(meals: Iterable) -> str:
    return "\n\n".join(f"{i}. {describe_meal(m)}" for i, m in enumerate(meals, start=1))


def day_of_message(missionary, meals: list, today: date) -> OutboundMessage:
    subject = f"📅 Today's Meals - {format_long_date(today)}"
    text = f"Here are your meals for today:\n\n{_numbered(meals)}\n\nHave a wonderful day!"
    return OutboundMessage(
        MessageType.DAY_OF, subject, text, render_html("📅 Today's Meals", missionary.name, text)
    )


def weekly_summary_message(missionary, meals: list) -> OutboundMessage:
    subject = "📋 Weekly Meal Summary"
    if meals:
        text = (
            f"Here are your meals for the upcoming week:\n\n{_numbered(meals)}"
            "\n\nHave a blessed week!"
        )
    else:
        text = "No meals scheduled for the upcoming week."
    return OutboundMessage(
        MessageType.WEEKLY_SUMMARY, subject, text, render_html(subject, missionary.name, text)
    )


def consent_request_message(code: str) -> OutboundMessage:
    return _build(MessageType.CONSENT_REQUEST, None, code=code)


def email_verification_message(name: str, code: str, minutes: int) -> OutboundMessage:
    return _build(MessageType.EMAIL_VERIFICATION, name, code=code, minutes=minutes)


def password_reset_message(name: str, password: str) -> OutboundMessage:
    return _build(MessageType.PASSWORD_RESET, name, password=password)


def custom_message(name: Optional[str], text: str) -> OutboundMessage:
    subject = "📢 Ward Meal Scheduler Notification"
    return OutboundMessage(MessageType.CUSTOM, subject, text, render_html("📢 Notification", name, text))


def transfer_reminder_message(missionary, app_url: str) -> OutboundMessage:
    return _build(
        MessageType.TRANSFER_REMINDER,
        None,
        missionary=missionary.name,
        type=str(getattr(missionary.type, "value", missionary.type)).capitalize(),
        transfer_date=format_long_date(missionary.transfer_date),
        phone=missionary.phone_number or "Not provided",
        email=missionary.email_address or "Not provided",
        whatsapp=missionary.whatsapp_number or "Not provided",
        app_url=app_url,
    )


# ── SMS accounting ────────────────────────────────────────────

SMS_SINGLE_SEGMENT = 160
SMS_MULTIPART_SEGMENT = 153  # 7 chars per part go to the concatenation header


def sms_segment_count(text: str) -> int:
    """Number of SMS segments billed for `text`."""
    if len(text) <= SMS_SINGLE_SEGMENT:
        return 1
    return math.ceil(len(text) / SMS_MULTIPART_SEGMENT)
