import json
import secrets
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .errors import AuthorizationFailure, BadRequest, Misconfiguration, PixieError
from .events import CreatedPixel, OpenContext, PixelInitPayload
from .logs import configure_logging
from .pipeline.recorder import create_pixel, record_open
from .pipeline.report import build_report, render_csv, render_json
from .settings import Settings, get_settings
from .store import KVStore, build_store

logger = structlog.get_logger()

API_KEY_HEADER = "x-api-key"

# 1x1 transparent GIF (43 bytes)
TRANSPARENT_GIF = bytes([
    71, 73, 70, 56, 57, 97, 1, 0, 1, 0, 128, 0, 0, 0, 0, 0, 255, 255, 255, 33,
    249, 4, 1, 0, 0, 0, 0, 44, 0, 0, 0, 0, 1, 0, 1, 0, 0, 2, 2, 68, 1, 0, 59,
])

PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "Content-Length": str(len(TRANSPARENT_GIF)),
    "Access-Control-Allow-Origin": "*",
}


def get_store(request: Request) -> KVStore:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def read_payload(request: Request) -> PixelInitPayload:
    """Unparseable bodies count as an empty payload; an invalid field is dropped on its own."""
    body = await request.body()
    try:
        data = json.loads(body) if body else {}
    except ValueError:
        return PixelInitPayload()
    if not isinstance(data, dict):
        return PixelInitPayload()
    fields = {}
    for name in PixelInitPayload.model_fields:
        if name not in data:
            continue
        try:
            fields[name] = getattr(PixelInitPayload.model_validate({name: data[name]}), name)
        except ValidationError:
            logger.info("payload_field_dropped", field=name)
    return PixelInitPayload(**fields)


def require_api_key(request: Request, settings: Settings = Depends(get_app_settings)) -> None:
    if not settings.api_key:
        raise Misconfiguration("Server misconfigured: missing API_KEY")
    provided = request.headers.get(API_KEY_HEADER)
    if not provided or not secrets.compare_digest(provided.encode(), settings.api_key.encode()):
        raise AuthorizationFailure()


def client_ip(request: Request) -> Optional[str]:
    ip = request.headers.get("cf-connecting-ip")
    if ip:
        return ip
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else None


def open_context(request: Request) -> OpenContext:
    h = request.headers
    geo = {"country": h.get("cf-ipcountry"), "region": h.get("cf-region"), "city": h.get("cf-ipcity")}
    return OpenContext(
        ip=client_ip(request),
        user_agent=h.get("user-agent"),
        referer=h.get("referer"),
        language=h.get("accept-language"),
        geo=geo if any(geo.values()) else None,
    )


def base_url(request: Request, settings: Settings) -> str:
    return (settings.public_base_url or str(request.base_url)).rstrip("/")


def create_app(settings: Optional[Settings] = None, store: Optional[KVStore] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        close = getattr(app.state.store, "close", None)
        if close is not None:
            await close()

    app = FastAPI(title="Pixie API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store if store is not None else build_store(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "HEAD", "POST", "OPTIONS"],
        allow_headers=[API_KEY_HEADER, "content-type"],
    )

    @app.exception_handler(PixieError)
    async def pixie_error(request: Request, exc: PixieError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.get("/health")
    async def health(store: KVStore = Depends(get_store)):
        return {"ok": True, "service": "pixie", "store": await store.ping()}

    @app.post("/api/pixels", status_code=201, dependencies=[Depends(require_api_key)])
    async def create(request: Request, store: KVStore = Depends(get_store)):
        payload = await read_payload(request)
        meta, token = await create_pixel(store, payload.label, payload.metadata)
        base = base_url(request, request.app.state.settings)
        created = CreatedPixel(
            id=meta.id,
            created_at=meta.created_at,
            pixel_url=f"{base}/pixel/{meta.id}.gif",
            events_url=f"{base}/api/pixels/{meta.id}?token={token}",
            access_token=token,
        )
        return JSONResponse(status_code=201, content=created.model_dump(by_alias=True))

    @app.get("/api/pixels/")
    async def report_without_id():
        raise BadRequest("Missing pixel id")

    @app.get("/api/pixels/{pixel_id}")
    async def report(
        pixel_id: str,
        request: Request,
        token: Optional[str] = Query(None),
        format: str = Query("json"),
        store: KVStore = Depends(get_store),
    ):
        limit = request.app.state.settings.event_page_limit
        rep = await build_report(store, pixel_id, token, limit)
        logger.info("report_served", pixel_id=pixel_id, format=format, events=len(rep.events))
        if format == "csv":
            return Response(
                content=render_csv(rep.events),
                media_type="text/csv; charset=utf-8",
                headers={"Content-Disposition": f'attachment; filename="{pixel_id}-events.csv"'},
            )
        return JSONResponse(content=render_json(rep))

    # every /pixel/... path answers with the image; only the first segment names the pixel
    @app.api_route("/pixel/", methods=["GET", "HEAD"])
    @app.api_route("/pixel/{ref:path}", methods=["GET", "HEAD"])
    async def pixel(request: Request, ref: str = "", store: KVStore = Depends(get_store)):
        segment = ref.split("/", 1)[0]
        pixel_id = segment[:-4] if segment.lower().endswith(".gif") else segment
        try:
            await record_open(store, pixel_id, open_context(request))
        except Exception:
            # the response must not depend on whether recording worked
            logger.exception("pixel_open_failed", pixel_id=pixel_id)
        body = b"" if request.method == "HEAD" else TRANSPARENT_GIF
        return Response(content=body, media_type="image/gif", headers=PIXEL_HEADERS)

    return app


app = create_app()


if __name__ == "__main__":
    s = get_settings()
    uvicorn.run("pixie.app:app", host=s.host, port=s.port)
