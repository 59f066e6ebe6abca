from __future__ import annotations

import io
import re
from dataclasses import dataclass
from typing import Callable, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
from PIL import Image, UnidentifiedImageError

from mapexport.errors import TileDecodeError, UpstreamFetchError
from mapexport.log import get_logger
from mapexport.services.canvas import MapCanvas

logger = get_logger(__name__)

_CONTENT_TYPE_RE = re.compile(r"^\s*(image/\w+)", re.IGNORECASE)
_SUPPORTED_TYPES = {"image/png": "PNG", "image/jpeg": "JPEG", "image/gif": "GIF"}
_SERVICE_EXCEPTION_RE = re.compile(r"(?is)<ServiceException[^>]*>\s*(.*?)\s*</ServiceException>")
_HTML_TITLE_RE = re.compile(r"(?is)<title>\s*([^<]{1,120})\s*</title>")


@dataclass(frozen=True)
class TileResponse:
    status: int
    content_type: str
    body: bytes
    url: str = ""


class TileTransport(Protocol):
    def get(self, url: str) -> TileResponse: ...


# route (path relative to the internal base), query params -> response.
# Raises LookupError when nothing matches the route.
InternalHandler = Callable[[str, dict[str, str]], TileResponse]


class HttpTileTransport:
    """Plain httpx fetch with a bounded timeout and connection retries."""

    def __init__(self, *, timeout_sec: float = 20.0, retries: int = 1, client: httpx.Client | None = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout_sec,
            follow_redirects=True,
            transport=httpx.HTTPTransport(retries=max(0, int(retries))),
        )

    def get(self, url: str) -> TileResponse:
        try:
            r = self._client.get(url)
        except httpx.TimeoutException:
            raise UpstreamFetchError(url, reason="timeout") from None
        except httpx.HTTPError as e:
            raise UpstreamFetchError(url, reason=type(e).__name__) from None
        return TileResponse(
            status=r.status_code,
            content_type=r.headers.get("content-type", ""),
            body=r.content,
            url=url,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpTileTransport":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ProxyTileTransport:
    """Route external requests through an OWS proxy entry point (`?url=<target>`)."""

    def __init__(self, inner: TileTransport, proxy_url: str | None = None) -> None:
        self.inner = inner
        self.proxy_url = (proxy_url or "").strip() or None

    def proxied_url(self, url: str) -> str:
        if not self.proxy_url:
            return url
        sep = "&" if "?" in self.proxy_url else "?"
        return f"{self.proxy_url}{sep}{urlencode({'url': url})}"

    def get(self, url: str) -> TileResponse:
        r = self.inner.get(self.proxied_url(url))
        # Report the original target, not the proxy wrapper.
        return TileResponse(status=r.status, content_type=r.content_type, body=r.body, url=url)

    def close(self) -> None:
        _close(self.inner)


class MapRequestDispatcher:
    """Pick internal dispatch or the proxy path for a tile URL.

    URLs whose `host + path` starts with `internal_base_url` (scheme ignored) go to
    `internal_handler` with the route remainder and the parsed query string. If the
    handler cannot route the request, the proxy path is used instead.
    """

    def __init__(
        self,
        proxy: TileTransport,
        *,
        internal_base_url: str | None = None,
        internal_handler: InternalHandler | None = None,
    ) -> None:
        self.proxy = proxy
        self.internal_handler = internal_handler
        self._internal_prefix = _host_path(internal_base_url) if internal_base_url else ""

    def internal_route(self, url: str) -> str | None:
        if not self._internal_prefix or self.internal_handler is None:
            return None
        parts = urlsplit(url)
        host = parts.netloc or self._internal_prefix.split("/", 1)[0]
        host_path = host + parts.path
        if not host_path.startswith(self._internal_prefix):
            return None
        return host_path[len(self._internal_prefix) :]

    def get(self, url: str) -> TileResponse:
        route = self.internal_route(url)
        if route is not None and self.internal_handler is not None:
            params = dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))
            try:
                return self.internal_handler(route, params)
            except LookupError:
                logger.debug("no internal route for %s, using proxy", route)
        return self.proxy.get(url)

    def close(self) -> None:
        _close(self.proxy)


def _close(transport: object) -> None:
    close = getattr(transport, "close", None)
    if callable(close):
        close()


def _host_path(base_url: str) -> str:
    parts = urlsplit(base_url if "//" in base_url else f"//{base_url}")
    return (parts.netloc + parts.path).rstrip("/")


def _extract_error_hint(body: bytes) -> str:
    """Best-effort extract a concise hint from XML / HTML error bodies."""
    try:
        text = body[:2000].decode("utf-8", errors="ignore")
    except (AttributeError, TypeError):
        return ""
    m = _SERVICE_EXCEPTION_RE.search(text)
    if m:
        return " ".join(m.group(1).split())[:200]
    m = _HTML_TITLE_RE.search(text)
    if m:
        return m.group(1).strip()
    return ""


def _image_type(content_type: str) -> str:
    m = _CONTENT_TYPE_RE.match(content_type or "")
    return m.group(1).lower() if m else (content_type or "").strip()


def decode_image(response: TileResponse) -> Image.Image:
    """Decode a tile response into a loaded Pillow image, by `image/<kind>` content type."""
    matched = _image_type(response.content_type)
    expected = _SUPPORTED_TYPES.get(matched)
    if expected is None:
        hint = _extract_error_hint(response.body)
        logger.warning("Unhandled mimetype %r for %s %s", matched, response.url, hint)
        raise TileDecodeError(response.url, response.status, matched)
    try:
        img = Image.open(io.BytesIO(response.body))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        raise TileDecodeError(response.url, response.status, matched) from None
    if img.format != expected:
        img.close()
        raise TileDecodeError(response.url, response.status, matched)
    return img


def alpha_table(opacity: float) -> list[int]:
    """Lookup table scaling 8-bit alpha toward transparency.

    Same rule as the 7-bit `127 - (127 - alpha) * opacity` (127 = transparent),
    expressed for Pillow's 0 = transparent / 255 = opaque alpha.
    """
    return [int(round(a * opacity)) for a in range(256)]


def force_to_rgba(image: Image.Image, opacity: float = 1.0) -> Image.Image:
    """Return a true-color RGBA copy of `image` with alpha scaled by `opacity`.

    RGB channels are preserved exactly; with opacity 1.0 alpha is untouched.
    """
    rgba = image.convert("RGBA") if image.mode != "RGBA" else image.copy()
    if float(opacity) != 1.0:
        alpha = rgba.getchannel("A").point(alpha_table(float(opacity)))
        rgba.putalpha(alpha)
    return rgba


def build_tile_url(base_url: str, canvas: MapCanvas, *, change_axis: bool = False) -> str:
    width, height = canvas.pixel_size.as_tuple()
    params = f"BBOX={canvas.bbox_param(change_axis)}&WIDTH={width}&HEIGHT={height}"
    if "?" not in base_url:
        return f"{base_url}?{params}"
    if base_url.endswith(("?", "&")):
        return base_url + params
    return f"{base_url}&{params}"


class TileFetcher:
    """Fetch a URL through a transport and return an opacity-adjusted RGBA image."""

    def __init__(self, transport: TileTransport) -> None:
        self.transport = transport

    def fetch_response(self, url: str) -> TileResponse:
        response = self.transport.get(url)
        if response.status >= 400:
            # Image bodies are decoded whatever the status.
            if _image_type(response.content_type) in _SUPPORTED_TYPES:
                logger.debug("status %d with %s body for %s", response.status, response.content_type, url)
                return response
            hint = _extract_error_hint(response.body)
            raise UpstreamFetchError(url, status=response.status, reason=hint)
        return response

    def fetch(self, url: str, opacity: float = 1.0) -> Image.Image:
        response = self.fetch_response(url)
        raw = decode_image(response)
        try:
            return force_to_rgba(raw, opacity)
        finally:
            raw.close()

    def close(self) -> None:
        _close(self.transport)

    def __enter__(self) -> "TileFetcher":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def default_fetcher(
    *,
    timeout_sec: float,
    retries: int,
    proxy_url: str | None = None,
    internal_base_url: str | None = None,
    internal_handler: InternalHandler | None = None,
) -> TileFetcher:
    proxy = ProxyTileTransport(HttpTileTransport(timeout_sec=timeout_sec, retries=retries), proxy_url)
    dispatcher = MapRequestDispatcher(
        proxy,
        internal_base_url=internal_base_url,
        internal_handler=internal_handler,
    )
    return TileFetcher(dispatcher)
