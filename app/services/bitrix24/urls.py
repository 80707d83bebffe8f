"""Callback URLs handed to the portal at registration time.

The portal stores these URLs when an object is registered and keeps using
them until it is registered again, so ``fresh=True`` appends a version
marker that forces the portal to treat the URL as new.
"""

from __future__ import annotations

from urllib.parse import urlencode

from app.config import settings
from app.services.common import utcnow

PLACEMENT_PATH = "/bitrix24/placement"
EVENTS_PATH = "/bitrix24/events"
BOT_PATH = "/bitrix24/bot"
ROBOT_PATH = "/bitrix24/robot"
SMS_PATH = "/bitrix24/sms"


def callback_url(path: str, *, fresh: bool = False, **params) -> str:
    base = settings.public_base_url.rstrip("/")
    query = {key: value for key, value in params.items() if value is not None}
    if fresh:
        query["v"] = str(int(utcnow().timestamp()))
    url = f"{base}{path}"
    if query:
        url = f"{url}?{urlencode(query)}"
    return url


def placement_url(fresh: bool = False) -> str:
    return callback_url(PLACEMENT_PATH, fresh=fresh)


def events_url(fresh: bool = False) -> str:
    return callback_url(EVENTS_PATH, fresh=fresh)
