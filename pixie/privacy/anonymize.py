from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Mapping, Optional

from ..events import OpenContext, PixelEvent, utc_now_iso

USER_AGENT_MAX = 256
REFERER_MAX = 256
LANGUAGE_MAX = 32

ELLIPSIS = "…"
GEO_FIELDS = ("country", "region", "city")


def anonymize_ip(ip: Optional[str]) -> Optional[str]:
    """
    IPv4 a.b.c.d -> a.b.c.0; IPv6 -> last four groups zeroed.
    Anything that is not a valid address yields None.
    """
    if not ip:
        return None
    ip = ip.strip()
    try:
        addr = ipaddress.ip_address(ip.split("%", 1)[0])
    except ValueError:
        return None

    if addr.version == 4:
        a, b, c, _ = ip.split(".")
        return f"{a}.{b}.{c}.0"

    # keep the caller's spelling of the prefix unless it has to be expanded
    if "::" in ip or "." in ip or "%" in ip:
        groups = addr.exploded.split(":")
    else:
        groups = ip.split(":")
    return ":".join(groups[:-4] + ["0000"] * 4)


def sanitize_geo(raw: Optional[Mapping[str, Optional[str]]]) -> Optional[dict]:
    if not raw:
        return None
    geo = {k: raw[k] for k in GEO_FIELDS if raw.get(k)}
    return geo or None


def truncate(value: Optional[str], max_len: int) -> Optional[str]:
    if not value:
        return None
    if len(value) > max_len:
        return value[: max_len - 1] + ELLIPSIS
    return value


def build_event(ctx: OpenContext, now: Optional[datetime] = None) -> PixelEvent:
    return PixelEvent(
        timestamp=utc_now_iso(now),
        anonymized_ip=anonymize_ip(ctx.ip),
        user_agent=truncate(ctx.user_agent, USER_AGENT_MAX),
        referer=truncate(ctx.referer, REFERER_MAX),
        language=truncate(ctx.language, LANGUAGE_MAX),
        geo=sanitize_geo(ctx.geo),
    )
