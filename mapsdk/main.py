import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from mapsdk.config import settings
from mapsdk.models import LocatorResponse, ResourceLoadReport, UsageTickReport
from mapsdk.services import HttpxTransport
from mapsdk.storage import InMemoryStorage, MongoStorage, StorageError
from mapsdk.telemetry import MapSdkContext
from mapsdk.utils import (
    MalformedLocator,
    MissingToken,
    SecretTokenUsed,
    normalize_glyphs_locator,
    normalize_source_locator,
    normalize_sprite_locator,
    normalize_style_locator,
    normalize_tile_locator,
)


log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
logging.basicConfig(
    level=log_level,
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger("mapsdk-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the SDK context on startup and release its storage on shutdown"""
    logger.info("Starting application...")
    storage = connect_storage()
    sdk = MapSdkContext(HttpxTransport(), storage)
    app.state.sdk = sdk
    yield
    logger.info("Shutting down application...")
    # Deliveries still in flight must not finish against closed storage
    pending = sdk.cancel_pending()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    storage.close()


def connect_storage() -> InMemoryStorage | MongoStorage:
    """Connect to MongoDB once at startup, falling back to memory when it is unset or unreachable"""
    if not settings.mongodb_url:
        logger.info("No MONGODB_URL set, telemetry event data is kept in memory")
        return InMemoryStorage()

    storage = MongoStorage(settings.mongodb_url, settings.database_name, settings.collection_name)
    try:
        storage.connect()
    except StorageError as exc:
        logger.error("MongoDB unavailable, telemetry event data is kept in memory: %s", exc)
        return InMemoryStorage()
    logger.info("Persisting telemetry event data to MongoDB")
    return storage


app = FastAPI(
    title="Map SDK Locator and Telemetry API",
    description="Normalizes map service resource locators and forwards anonymous usage telemetry",
    version=settings.sdk_version,
    lifespan=lifespan
)


def get_sdk_context(request: Request) -> MapSdkContext:
    return request.app.state.sdk


def _rewrite(normalize: Callable[..., str], *args, **kwargs) -> LocatorResponse:
    """Run a locator rewrite, mapping integrator configuration errors to HTTP errors"""
    try:
        return LocatorResponse(url=normalize(*args, **kwargs))
    except MalformedLocator as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except MissingToken as exc:
        logger.warning("Locator rewrite without access token")
        raise HTTPException(status_code=401, detail=str(exc))
    except SecretTokenUsed as exc:
        logger.warning("Locator rewrite attempted with a secret access token")
        raise HTTPException(status_code=403, detail=str(exc))


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Map SDK Locator and Telemetry API",
        "endpoints": {
            "GET /locators/{style,glyphs,source,sprite,tile}": "Rewrite a locator onto the map service API",
            "POST /telemetry/resource-load": "Report a loaded map (sent once per subject id)",
            "POST /telemetry/usage": "Report map usage (sent at most once per day)"
        }
    }


@app.get("/locators/style", response_model=LocatorResponse)
async def style_locator(url: str, access_token: Optional[str] = None):
    return _rewrite(normalize_style_locator, url, access_token)


@app.get("/locators/glyphs", response_model=LocatorResponse)
async def glyphs_locator(url: str, access_token: Optional[str] = None):
    return _rewrite(normalize_glyphs_locator, url, access_token)


@app.get("/locators/source", response_model=LocatorResponse)
async def source_locator(url: str, access_token: Optional[str] = None):
    return _rewrite(normalize_source_locator, url, access_token)


@app.get("/locators/sprite", response_model=LocatorResponse)
async def sprite_locator(url: str, extension: str, scale: str = "", access_token: Optional[str] = None):
    """
    Sprite sheet locator

    Args:
        scale: "" or "@2x"
        extension: ".json" for the index, ".png" for the image
    """
    return _rewrite(normalize_sprite_locator, url, scale, extension, access_token)


@app.get("/locators/tile", response_model=LocatorResponse)
async def tile_locator(
    url: str,
    source_url: Optional[str] = None,
    tile_size: Optional[int] = None,
    pixel_ratio: Optional[float] = None,
    supports_webp: Optional[bool] = None,
    access_token: Optional[str] = None,
):
    return _rewrite(
        normalize_tile_locator,
        url,
        source_url,
        tile_size,
        access_token=access_token,
        pixel_ratio=pixel_ratio,
        supports_webp=supports_webp,
    )


@app.post("/telemetry/resource-load", status_code=202)
async def report_resource_load(report: ResourceLoadReport, sdk: MapSdkContext = Depends(get_sdk_context)):
    """Queue a map.load event; delivery happens in the background and never fails the request"""
    sdk.report_resource_load(report.locators, report.subject_id)
    return {"status": "accepted"}


@app.post("/telemetry/usage", status_code=202)
async def report_usage(report: UsageTickReport, sdk: MapSdkContext = Depends(get_sdk_context)):
    sdk.report_usage_tick(report.locators)
    return {"status": "accepted"}


@app.get("/health")
async def health_check(sdk: MapSdkContext = Depends(get_sdk_context)):
    """Health check endpoint"""
    if sdk.storage.is_available():
        return {"status": "healthy", "storage": "available"}
    logger.error("Telemetry storage health check failed")
    return JSONResponse(
        status_code=503,
        content={"status": "unhealthy", "storage": "unavailable"}
    )
