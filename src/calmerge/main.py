from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from .aggregator import CalendarAggregator
from .config import AppConfig, api_token_from_env, identity_from_env, load_config
from .dedupe import DuplicateDetector
from .models import AggregationResult, Event, Identity, TodayEvent
from .preferences import JsonPreferenceStore, PreferenceStore
from .sources import AvailabilityFetcher, BookingsFetcher, ExternalEventsFetcher
from .timesource import TimeSource
from .transport import RequestsTransport, Transport

CONFIG_PATH_DEFAULT = "config.yaml"


def build_aggregator(
    cfg: AppConfig,
    identity: Identity,
    transport: Transport,
    preferences: PreferenceStore,
    clock: Optional[Callable[[], datetime]] = None,
) -> CalendarAggregator:
    time_source = TimeSource(preferences, clock=clock, default_timezone=cfg.timezone)
    now = time_source.now
    return CalendarAggregator(
        bookings=BookingsFetcher(
            transport,
            identity,
            now,
            ttl=cfg.cache.bookings_ttl,
            status=cfg.bookings.status,
            page_size=cfg.bookings.page_size,
        ),
        external=ExternalEventsFetcher(
            transport, identity, now, ttl=cfg.cache.external_ttl, sync=cfg.external.sync
        ),
        availability=AvailabilityFetcher(transport, identity, now, ttl=cfg.cache.availability_ttl),
        time_source=time_source,
        detector=DuplicateDetector(
            time_tolerance=timedelta(seconds=cfg.dedupe.time_tolerance_seconds),
            match_locations=cfg.dedupe.match_locations,
        ),
    )


def event_payload(e: Event) -> Dict[str, Any]:
    payload = {
        "id": e.id,
        "title": e.title,
        "source_kind": e.source_kind,
        "status": e.status,
        "start_utc": e.start_utc.isoformat(),
        "end_utc": e.end_utc.isoformat(),
        "display_start": e.display_start,
        "display_end": e.display_end,
        "date_key": e.date_key,
        "location": e.location,
        "attendees": e.attendees,
    }
    if isinstance(e, TodayEvent):
        payload.update(
            {
                "is_now": e.is_now,
                "is_upcoming": e.is_upcoming,
                "is_past": e.is_past,
                "starts_in": e.starts_in,
            }
        )
    return payload


def result_payload(result: AggregationResult) -> Dict[str, Any]:
    return {
        "window": {
            "start_utc": result.window.start_utc.isoformat(),
            "end_utc": result.window.end_utc.isoformat(),
        },
        "degraded": result.degraded,
        "failed_sources": sorted(result.failures),
        "skipped_records": result.skipped,
        "events": [event_payload(e) for e in result.events],
    }


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


async def run_command(args: argparse.Namespace, aggregator: CalendarAggregator) -> Dict[str, Any]:
    if args.command == "today":
        return result_payload(await aggregator.get_today_events(use_cache=not args.no_cache))

    if args.command == "window":
        tz = aggregator.time_source.resolve_timezone()
        start = datetime.combine(args.start, datetime.min.time(), tzinfo=tz)
        end = datetime.combine(args.end or args.start, datetime.min.time(), tzinfo=tz)
        return result_payload(await aggregator.get_events_for_window(start, end, use_cache=not args.no_cache))

    if args.command == "week":
        return result_payload(await aggregator.get_week_events(args.day, use_cache=not args.no_cache))

    if args.command == "sync":
        window = aggregator.time_source.week_window()
        result = await aggregator.external.force_sync(window)
        return {"synced": result.ok, "events": len(result.records), "error": str(result.error or "")}

    raise ValueError(f"Unknown command: {args.command}")


def main() -> None:
    ap = argparse.ArgumentParser(description="Merged calendar timeline: bookings, synced calendars, absences")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--verbose", "-v", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    today = sub.add_parser("today")
    today.add_argument("--no-cache", action="store_true")

    window = sub.add_parser("window")
    window.add_argument("--start", required=True, type=_parse_day)
    window.add_argument("--end", type=_parse_day)
    window.add_argument("--no-cache", action="store_true")

    week = sub.add_parser("week")
    week.add_argument("--day", type=_parse_day)
    week.add_argument("--no-cache", action="store_true")

    sub.add_parser("sync")

    set_tz = sub.add_parser("set-timezone")
    set_tz.add_argument("name")

    args = ap.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    load_dotenv()
    cfg = load_config(args.config)
    preferences = JsonPreferenceStore(cfg.preferences_path)

    if args.command == "set-timezone":
        name = TimeSource(preferences, default_timezone=cfg.timezone).set_timezone(args.name)
        print(json.dumps({"timezone": name}, indent=2))
        return

    transport = RequestsTransport(cfg.api.base_url, token=api_token_from_env(), timeout=cfg.api.timeout_seconds)
    aggregator = build_aggregator(cfg, identity_from_env(), transport, preferences)
    print(json.dumps(asyncio.run(run_command(args, aggregator)), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
