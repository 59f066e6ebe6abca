from pathlib import Path

from pydantic import Field
from pydantic.aliases import AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_env_files() -> tuple[Path, ...]:
    """Return dotenv candidates for pydantic-settings (missing files are ignored).

    Precedence (later overrides earlier):
    1) repo-root `.env`, `.env.local` (where this package lives during dev)
    2) CWD `.env`, `.env.local` (user overrides)
    """

    def _repo_root() -> Path:
        here = Path(__file__).resolve()
        # Typical dev layout: <repo>/src/mapexport/config.py
        for cand in [here.parent] + list(here.parents):
            if (cand / "pyproject.toml").exists() and (cand / "src").exists():
                return cand
        try:
            return here.parents[2]
        except IndexError:
            return here.parent

    repo_root = _repo_root()
    cwd = Path.cwd()
    return (
        repo_root / ".env",
        repo_root / ".env.local",
        cwd / ".env",
        cwd / ".env.local",
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MAPEXPORT_",
        extra="ignore",
        env_file=_default_env_files(),
        env_file_encoding="utf-8",
    )

    # Tile / legend requests
    tile_timeout_sec: float = 20.0
    # Connection-level retries handled by the httpx transport.
    tile_retries: int = 1
    # OWS proxy entry point; the target URL is passed as `?url=...`.
    proxy_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MAPEXPORT_PROXY_URL", "OWSPROXY_URL"),
    )
    # Requests whose host+path start with this prefix are dispatched internally.
    internal_base_url: str | None = None

    # Print
    templates_dir: str = "templates"
    # Group logos and legend page watermarks (`<name>.png`).
    images_dir: str = "images"
    font_path: str | None = None
    default_quality_dpi: int = 72

    # Export
    jpeg_quality: int = 85

    log_level: str = "INFO"


settings = Settings()
