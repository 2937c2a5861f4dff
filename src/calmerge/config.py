from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional
import os

import yaml

from .models import Identity


class ConfigError(ValueError):
    """Raised when required settings are missing or invalid."""


@dataclass
class ApiConfig:
    base_url: str
    timeout_seconds: float


@dataclass
class CacheConfig:
    bookings_ttl_minutes: float
    external_ttl_minutes: float
    availability_ttl_minutes: float

    @property
    def bookings_ttl(self) -> timedelta:
        return timedelta(minutes=self.bookings_ttl_minutes)

    @property
    def external_ttl(self) -> timedelta:
        return timedelta(minutes=self.external_ttl_minutes)

    @property
    def availability_ttl(self) -> timedelta:
        return timedelta(minutes=self.availability_ttl_minutes)


@dataclass
class DedupeConfig:
    time_tolerance_seconds: float
    match_locations: bool


@dataclass
class BookingsConfig:
    status: str
    page_size: int


@dataclass
class ExternalConfig:
    sync: str


@dataclass
class AppConfig:
    timezone: Optional[str]
    preferences_path: str
    api: ApiConfig
    cache: CacheConfig
    dedupe: DedupeConfig
    bookings: BookingsConfig
    external: ExternalConfig


def load_config(path: Optional[str] = None) -> AppConfig:
    data: Dict[str, Any] = {}
    if path:
        p = Path(path)
        if p.exists():
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    api = data.get("api", {}) or {}
    cache = data.get("cache", {}) or {}
    dedupe = data.get("dedupe", {}) or {}
    bookings = data.get("bookings", {}) or {}
    external = data.get("external", {}) or {}

    timezone = data.get("timezone")
    return AppConfig(
        timezone=str(timezone) if timezone else None,
        preferences_path=str(data.get("preferences_path", "~/.calmerge/preferences.json")),
        api=ApiConfig(
            base_url=str(api.get("base_url", "http://localhost:8000/api/")),
            timeout_seconds=float(api.get("timeout_seconds", 10)),
        ),
        cache=CacheConfig(
            bookings_ttl_minutes=float(cache.get("bookings_ttl_minutes", 5)),
            external_ttl_minutes=float(cache.get("external_ttl_minutes", 5)),
            availability_ttl_minutes=float(cache.get("availability_ttl_minutes", 30)),
        ),
        dedupe=DedupeConfig(
            time_tolerance_seconds=float(dedupe.get("time_tolerance_seconds", 60)),
            match_locations=bool(dedupe.get("match_locations", True)),
        ),
        bookings=BookingsConfig(
            status=str(bookings.get("status", "all")),
            page_size=int(bookings.get("page_size", 200)),
        ),
        external=ExternalConfig(
            sync=str(external.get("sync", "auto")),
        ),
    )


def identity_from_env() -> Identity:
    user_id = os.environ.get("CALMERGE_USER_ID", "").strip()
    if not user_id:
        raise ConfigError("CALMERGE_USER_ID is not set")
    org_id = os.environ.get("CALMERGE_ORGANIZATION_ID", "").strip()
    return Identity(user_id=user_id, organization_id=org_id or None)


def api_token_from_env() -> str:
    return os.environ.get("CALMERGE_API_TOKEN", "").strip()
