"""Error types for export and print jobs."""

from __future__ import annotations


class MapExportError(Exception):
    """Base exception for export / print failures.

    Args:
        code: Stable error code for callers mapping failures to responses.
        details: Optional technical details for logs.
    """

    def __init__(self, code: str, details: str = "") -> None:
        super().__init__(f"{code}: {details}" if details else code)
        self.code = code
        self.details = details


class ConfigurationError(MapExportError):
    """Raised when a job configuration is malformed."""

    def __init__(self, details: str) -> None:
        super().__init__("invalid_configuration", details)


class TileDecodeError(MapExportError):
    """Raised when a tile response body is not a supported image."""

    def __init__(self, url: str, status: int | None, content_type: str = "") -> None:
        super().__init__(
            "tile_decode_failed",
            f"url={url} status={status} content_type={content_type or 'unknown'}",
        )
        self.url = url
        self.status = status
        self.content_type = content_type


class UpstreamFetchError(MapExportError):
    """Raised when a tile or legend source could not be reached."""

    def __init__(self, url: str, status: int | None = None, reason: str = "") -> None:
        detail = f"url={url}"
        if status is not None:
            detail += f" status={status}"
        if reason:
            detail += f" ({reason})"
        super().__init__("upstream_fetch_failed", detail)
        self.url = url
        self.status = status


class TemplateNotFoundError(MapExportError):
    """Raised when a print template is missing or unreadable."""

    def __init__(self, template: str, details: str = "") -> None:
        super().__init__("template_not_found", f"{template} {details}".strip())
        self.template = template
