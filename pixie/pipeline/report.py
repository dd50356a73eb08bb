from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List

import pandas as pd
import structlog

from ..errors import AuthorizationFailure, NotFound
from ..events import PixelEvent, PixelMeta
from ..identity import verify_token
from ..store import KVStore, event_key_prefix
from .recorder import load_meta

logger = structlog.get_logger()

DEFAULT_PAGE_LIMIT = 1000

CSV_COLUMNS = ["timestamp", "anonymizedIp", "userAgent", "referer", "language", "country", "region", "city"]


@dataclass
class Report:
    meta: PixelMeta
    events: List[PixelEvent]
    # False when the single listing page was full and events may be missing
    complete: bool = True


def _ts_key(ev: PixelEvent) -> datetime:
    return datetime.fromisoformat(ev.timestamp.replace("Z", "+00:00"))


async def load_events(store: KVStore, pixel_id: str, limit: int = DEFAULT_PAGE_LIMIT):
    """
    Read one listing page of events for a pixel, oldest first.
    No continuation is chased, so very busy pixels are capped at `limit` events.
    """
    page = await store.list(event_key_prefix(pixel_id), limit)
    raw = await store.get_many(page.keys, "json")
    # listed keys can lag their values on an eventually-consistent store
    events = [PixelEvent.model_validate(r) for r in raw if r]
    events.sort(key=_ts_key)
    return events, page.complete


async def build_report(store: KVStore, pixel_id: str, token: str,
                       page_limit: int = DEFAULT_PAGE_LIMIT) -> Report:
    if not token:
        logger.info("report_denied", pixel_id=pixel_id, reason="missing_token")
        raise AuthorizationFailure()

    meta = await load_meta(store, pixel_id)
    if meta is None:
        raise NotFound()

    if not verify_token(token, meta.token_hash):
        logger.info("report_denied", pixel_id=pixel_id, reason="bad_token")
        raise AuthorizationFailure()

    events, complete = await load_events(store, pixel_id, page_limit)
    if not complete:
        logger.warning("report_truncated", pixel_id=pixel_id, limit=page_limit)
    return Report(meta=meta, events=events, complete=complete)


def render_json(report: Report) -> dict:
    return {
        "meta": report.meta.public(),
        "events": [ev.model_dump(by_alias=True) for ev in report.events],
        "eventCount": len(report.events),
        "complete": report.complete,
    }


def events_frame(events: List[PixelEvent]) -> pd.DataFrame:
    rows = []
    for ev in events:
        geo = ev.geo or {}
        rows.append({
            "timestamp": ev.timestamp,
            "anonymizedIp": ev.anonymized_ip,
            "userAgent": ev.user_agent,
            "referer": ev.referer,
            "language": ev.language,
            "country": geo.get("country"),
            "region": geo.get("region"),
            "city": geo.get("city"),
        })
    return pd.DataFrame(rows, columns=CSV_COLUMNS, dtype=object)


def render_csv(events: List[PixelEvent]) -> str:
    # QUOTE_MINIMAL: fields with commas, quotes or newlines are quoted, quotes doubled
    return events_frame(events).to_csv(index=False, na_rep="", lineterminator="\n")
