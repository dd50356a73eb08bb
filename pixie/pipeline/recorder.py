from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from ..events import OpenContext, PixelEvent, PixelMeta, utc_now_iso
from ..identity import mint_id, mint_token, hash_token, random_hex
from ..privacy.anonymize import build_event
from ..store import KVStore, event_key, meta_key

logger = structlog.get_logger()

TIEBREAK_BYTES = 3


async def load_meta(store: KVStore, pixel_id: str) -> Optional[PixelMeta]:
    if not pixel_id:
        return None
    raw = await store.get(meta_key(pixel_id), "json")
    if not raw:
        return None
    return PixelMeta.model_validate(raw)


async def create_pixel(store: KVStore, label: Optional[str] = None, metadata: Optional[dict] = None):
    """
    Mint an id and a bearer token and store the pixel's meta.
    Returns (meta, token); the raw token is handed out once and never stored.
    """
    token = mint_token()
    meta = PixelMeta(
        id=mint_id(),
        created_at=utc_now_iso(),
        label=label,
        metadata=metadata,
        token_hash=hash_token(token),
        open_count=0,
    )
    await store.put(meta_key(meta.id), meta.to_json())
    logger.info("pixel_created", pixel_id=meta.id, has_label=label is not None)
    return meta, token


async def record_open(store: KVStore, pixel_id: str, ctx: OpenContext,
                      now: Optional[datetime] = None) -> Optional[PixelEvent]:
    """
    Persist one anonymized open event and bump the pixel's counters.
    Unknown pixels are a silent no-op (returns None).

    The event write and the meta rewrite are independent puts. Concurrent opens may
    lose counter increments; the number of event keys is the real open count.
    """
    meta = await load_meta(store, pixel_id)
    if meta is None:
        logger.debug("pixel_open_ignored", pixel_id=pixel_id)
        return None

    now = now or datetime.now(timezone.utc)
    event = build_event(ctx, now)
    key = event_key(pixel_id, int(now.timestamp() * 1000), random_hex(TIEBREAK_BYTES))
    await store.put(key, event.to_json())

    meta.open_count += 1
    meta.last_opened_at = event.timestamp
    await store.put(meta_key(pixel_id), meta.to_json())

    logger.info("pixel_open_recorded", pixel_id=pixel_id, open_count=meta.open_count)
    return event
