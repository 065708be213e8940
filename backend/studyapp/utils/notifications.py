"""Notification payload builders and dispatch.

Delivery to a real web-push service is outside this backend: the
dispatcher serializes the payload for every stored subscription and logs
it, which is what the browser-side service worker expects to receive.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

_LOGGER = logging.getLogger("studyapp.notifications")

ICON = "/icon-192.png"


def build_payload(title: str, body: str, tag: str = "general", url: str = "/") -> dict:
    """Return the JSON payload consumed by the service worker `push` handler."""
    return {
        "title": title,
        "body": body,
        "icon": ICON,
        "badge": ICON,
        "tag": tag,
        "data": {"url": url},
    }


def study_reminder() -> dict:
    return build_payload(
        "Time to study!",
        "A short session today keeps you on track for your goal.",
        tag="study-reminder",
        url="/dashboard",
    )


def streak_reminder(streak: int) -> dict:
    return build_payload(
        f"{streak}-day streak going strong!",
        "Great work! Study today to keep your streak alive.",
        tag="streak-reminder",
        url="/progress",
    )


def dispatch(user_id: int, payload: dict, subscriptions: Iterable[str]) -> int:
    """Hand `payload` to each subscription endpoint and return the count.

    With no subscriptions the payload is still logged once so the
    request is traceable.
    """
    body = json.dumps(payload, ensure_ascii=True)
    sent = 0
    for endpoint in subscriptions:
        _LOGGER.info("push_dispatch user=%s endpoint=%s payload=%s", user_id, endpoint, body)
        sent += 1
    if not sent:
        _LOGGER.info("push_logged user=%s payload=%s", user_id, body)
    return sent
