"""Locator helpers for the map service API.

First-party resources are addressed with the private ``mapservice://`` scheme
(``mapservice://styles/user/style-id``). Before a request goes out they are
rewritten onto the configured API origin, with the access token appended when
the deployment requires one.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from mapsdk.config import Settings, settings
from mapsdk.models import LocatorParts

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HELP = "See https://docs.example-mapservice.com/api/#access-tokens"
FIRST_PARTY_SCHEME = "mapservice:"

_locator_re = re.compile(r"^(\w+)://([^/?]+)(/[^?]*)?\??(.+)?$")
_first_party_http_re = re.compile(
    r"^((https?:)?//)?([^/]+\.)?example-mapservice\.c(n|om)(/|\?|$)", re.IGNORECASE
)
_image_extension_re = re.compile(r"(\.(png|jpg)\d*)(?=$)")

_warned: set[str] = set()


class MalformedLocator(ValueError):
    """Raised when a locator does not look like scheme://authority/path?query"""


class AccessTokenError(RuntimeError):
    """Raised when the configured access token cannot be used for API requests"""


class MissingToken(AccessTokenError):
    """No access token is configured or supplied"""


class SecretTokenUsed(AccessTokenError):
    """A secret (sk.*) token was supplied where a public one is required"""


def warn_once(message: str) -> None:
    """Log a warning the first time a given message is seen in this process."""
    if message in _warned:
        return
    _warned.add(message)
    logger.warning(message)


def parse_locator(locator: str) -> LocatorParts:
    """Split a locator into protocol, authority, path and query parameters.

    The path defaults to ``/`` and the query is kept as the raw ``key=value``
    pieces, so formatting the result reproduces the input.
    """
    parts = _locator_re.match(locator)
    if not parts:
        raise MalformedLocator(f"Unable to parse locator: {locator!r}")
    return LocatorParts(
        protocol=parts.group(1),
        authority=parts.group(2),
        path=parts.group(3) or "/",
        params=parts.group(4).split("&") if parts.group(4) else [],
    )


def format_locator(parts: LocatorParts) -> str:
    """Inverse of :func:`parse_locator`."""
    params = f"?{'&'.join(parts.params)}" if parts.params else ""
    return f"{parts.protocol}://{parts.authority}{parts.path}{params}"


def is_first_party(locator: str) -> bool:
    return locator.startswith(FIRST_PARTY_SCHEME)


def is_first_party_http(locator: str) -> bool:
    """True for http(s) or protocol-relative locators on the map service domain."""
    return bool(_first_party_http_re.match(locator))


def make_api_locator(
    parts: LocatorParts,
    access_token: Optional[str] = None,
    config: Optional[Settings] = None,
) -> str:
    """Point a parsed first-party locator at the API origin.

    The token (the supplied one, else the configured one) is only appended
    when the deployment requires access tokens.
    """
    config = config or settings
    api_parts = parse_locator(config.api_url)
    parts = parts.model_copy(deep=True)
    parts.protocol = api_parts.protocol
    parts.authority = api_parts.authority

    if api_parts.path != "/":
        parts.path = f"{api_parts.path}{parts.path}"

    if not config.require_access_token:
        return format_locator(parts)

    access_token = access_token or config.access_token
    if not access_token:
        raise MissingToken(f"An API access token is required to use the map service. {ACCESS_TOKEN_HELP}")
    if access_token[0] == "s":
        raise SecretTokenUsed(
            "Use a public access token (pk.*) with the map SDK, "
            f"not a secret access token (sk.*). {ACCESS_TOKEN_HELP}"
        )

    parts.params.append(f"access_token={access_token}")
    return format_locator(parts)


def normalize_style_locator(locator: str, access_token: Optional[str] = None) -> str:
    if not is_first_party(locator):
        return locator
    parts = parse_locator(locator)
    parts.path = f"/styles/v1{parts.path}"
    return make_api_locator(parts, access_token)


def normalize_glyphs_locator(locator: str, access_token: Optional[str] = None) -> str:
    if not is_first_party(locator):
        return locator
    parts = parse_locator(locator)
    parts.path = f"/fonts/v1{parts.path}"
    return make_api_locator(parts, access_token)


def normalize_source_locator(locator: str, access_token: Optional[str] = None) -> str:
    if not is_first_party(locator):
        return locator
    parts = parse_locator(locator)
    parts.path = f"/v4/{parts.authority}.json"
    # Tileset descriptors need the secure flag so the server answers with https resource links
    parts.params.append("secure")
    return make_api_locator(parts, access_token)


def normalize_sprite_locator(
    locator: str,
    scale: str,
    extension: str,
    access_token: Optional[str] = None,
) -> str:
    """Build the sprite sheet locator, e.g. scale ``@2x`` with extension ``.png``.

    Third-party sprite locators are parsed too, so they must be well formed.
    """
    parts = parse_locator(locator)
    if not is_first_party(locator):
        parts.path += f"{scale}{extension}"
        return format_locator(parts)
    parts.path = f"/styles/v1{parts.path}/sprite{scale}{extension}"
    return make_api_locator(parts, access_token)


def normalize_tile_locator(
    tile_locator: str,
    source_locator: Optional[str] = None,
    tile_size: Optional[int] = None,
    access_token: Optional[str] = None,
    pixel_ratio: Optional[float] = None,
    supports_webp: Optional[bool] = None,
) -> str:
    """Rewrite a tile locator that belongs to a first-party source.

    Device capabilities default to the configured ones.
    """
    if not source_locator or not is_first_party(source_locator):
        return tile_locator

    pixel_ratio = settings.device_pixel_ratio if pixel_ratio is None else pixel_ratio
    supports_webp = settings.supports_webp if supports_webp is None else supports_webp

    parts = parse_locator(tile_locator)

    # 512px raster tiles are only served with the @2x suffix, whatever the device density
    suffix = "@2x" if pixel_ratio >= 2 or tile_size == 512 else ""
    parts.path = _image_extension_re.sub(
        lambda match: f"{suffix}{'.webp' if supports_webp else match.group(1)}",
        parts.path,
    )

    _replace_temp_access_token(parts.params, access_token or settings.access_token)
    return format_locator(parts)


def _replace_temp_access_token(params: list[str], access_token: Optional[str]) -> None:
    # Tile templates from the API can carry a temporary tk.* token
    for i, param in enumerate(params):
        if param.startswith("access_token=tk."):
            params[i] = f"access_token={access_token or ''}"
