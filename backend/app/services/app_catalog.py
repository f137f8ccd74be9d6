"""Catalog of the OnSite apps that can be subscribed to"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.core.config import Settings, settings
from app.core.errors import InvalidAppError


class AppName(str, Enum):
    CALCULATOR = "calculator"
    TIMEKEEPER = "timekeeper"
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class AppConfig:
    name: str
    display_name: str
    price_id: str
    success_url: str


DISPLAY_NAMES = {
    AppName.CALCULATOR: "OnSite Calculator Pro",
    AppName.TIMEKEEPER: "OnSite Timekeeper Pro",
    AppName.DASHBOARD: "OnSite Dashboard Pro",
}

MOBILE_DEEP_LINK_SCHEMES = (
    "onsiteclub://",
    "onsitecalculator://",
    "onsitetimekeeper://",
)


def is_valid_app(app: str) -> bool:
    return app in AppName._value2member_map_


def get_app_config(app: str, app_settings: Settings = settings) -> AppConfig:
    if not is_valid_app(app):
        raise InvalidAppError(app)
    name = AppName(app)
    prefix = name.value.upper()
    return AppConfig(
        name=name.value,
        display_name=DISPLAY_NAMES[name],
        price_id=getattr(app_settings, f"STRIPE_PRICE_{prefix}"),
        success_url=getattr(app_settings, f"{prefix}_SUCCESS_URL"),
    )


def is_mobile_deep_link(url: str) -> bool:
    return url.startswith(MOBILE_DEEP_LINK_SCHEMES)
