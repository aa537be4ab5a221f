from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _env_seconds(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass(frozen=True)
class ServerConfig:
    """Connection settings for a ComfyUI render server.

    Values are read from environment variables so the same code runs against
    a local ComfyUI, a tunnelled GPU box or a hosted endpoint behind a bearer
    token:
      - COMFY_API_URL            (required)
      - COMFY_API_KEY            (optional, sent as `Authorization: Bearer ...`)
      - COMFY_REQUEST_TIMEOUT_S  (JSON round-trips)
      - COMFY_DOWNLOAD_TIMEOUT_S (input fetches and artifact downloads)
    """

    api_url: str
    api_key: Optional[str] = None

    request_timeout_s: float = 60.0
    download_timeout_s: float = 120.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "api_url", (self.api_url or "").strip().rstrip("/"))
        object.__setattr__(self, "api_key", (self.api_key or "").strip() or None)

    @staticmethod
    def from_env() -> "ServerConfig":
        return ServerConfig(
            api_url=_env("COMFY_API_URL", "") or "",
            api_key=_env("COMFY_API_KEY"),
            request_timeout_s=_env_seconds("COMFY_REQUEST_TIMEOUT_S", 60.0),
            download_timeout_s=_env_seconds("COMFY_DOWNLOAD_TIMEOUT_S", 120.0),
        )

    def with_overrides(self, *, api_url: Optional[str] = None, api_key: Optional[str] = None) -> "ServerConfig":
        return ServerConfig(
            api_url=api_url or self.api_url,
            api_key=api_key or self.api_key,
            request_timeout_s=self.request_timeout_s,
            download_timeout_s=self.download_timeout_s,
        )

    def auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def validate(self) -> None:
        if not self.api_url:
            raise ValueError(
                "Missing ComfyUI server URL. Set COMFY_API_URL in your environment (or pass --api-url)."
            )
        parsed = urlparse(self.api_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"COMFY_API_URL must be an http(s) URL, got {self.api_url!r}")
        if self.request_timeout_s <= 0 or self.download_timeout_s <= 0:
            raise ValueError("timeouts must be positive")
