from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .storage.memory_manager import DEFAULT_BUCKET_SIZE_IN_PAGES

DEFAULT_ANONYMOUS_PRINCIPAL = "2vxsx-fae"

# Longest textual principal accepted as an owner; keeps records within the encoding bound.
MAX_PRINCIPAL_LENGTH = 63


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - PERSISTENCE_BACKEND: 'memory' (default) or 'file'
    - STABLE_MEMORY_PATH: path to the stable memory file. Default './data/stable_memory.bin'
    - BUCKET_SIZE_IN_PAGES: pages per region bucket for new stable memories (default: 128)
    - MAX_MEMORY_PAGES: optional upper bound on the stable memory size, in 64 KiB pages
    - CALLER_HEADER: request header carrying the caller identity (default: X-Caller-Principal)
    - ANONYMOUS_PRINCIPAL: identity used when no caller header is sent, at most
      MAX_PRINCIPAL_LENGTH characters (default: 2vxsx-fae)
    - STRICT_DELETE: 'true' to check ownership before removing on delete (default: false)
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - LOG_LEVEL: logging level name (default: INFO)
    """

    persistence_backend: str = "memory"
    stable_memory_path: str = "./data/stable_memory.bin"
    bucket_size_in_pages: int = DEFAULT_BUCKET_SIZE_IN_PAGES
    max_memory_pages: Optional[int] = None
    caller_header: str = "X-Caller-Principal"
    anonymous_principal: str = DEFAULT_ANONYMOUS_PRINCIPAL
    strict_delete: bool = False
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.anonymous_principal or len(self.anonymous_principal) > MAX_PRINCIPAL_LENGTH:
            raise ValueError(
                f"anonymous_principal must be 1..{MAX_PRINCIPAL_LENGTH} characters, got {self.anonymous_principal!r}"
            )


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_bool(value: str, default: bool = False) -> bool:
    v = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_positive_int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        # Star will be handled in main via allow_origins=["*"]
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "file"}:
        # Fallback to memory if unsupported
        backend = "memory"

    bucket_size = _parse_positive_int(os.getenv("BUCKET_SIZE_IN_PAGES"), DEFAULT_BUCKET_SIZE_IN_PAGES)
    if bucket_size is None or bucket_size > 0xFFFF:
        bucket_size = DEFAULT_BUCKET_SIZE_IN_PAGES

    log_level = _get_env("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        log_level = "INFO"

    anonymous_principal = _get_env("ANONYMOUS_PRINCIPAL", DEFAULT_ANONYMOUS_PRINCIPAL).strip()
    if not anonymous_principal or len(anonymous_principal) > MAX_PRINCIPAL_LENGTH:
        anonymous_principal = DEFAULT_ANONYMOUS_PRINCIPAL

    return Settings(
        persistence_backend=backend,
        stable_memory_path=_get_env("STABLE_MEMORY_PATH", "./data/stable_memory.bin").strip(),
        bucket_size_in_pages=bucket_size,
        max_memory_pages=_parse_positive_int(os.getenv("MAX_MEMORY_PAGES"), None),
        caller_header=_get_env("CALLER_HEADER", "X-Caller-Principal").strip(),
        anonymous_principal=anonymous_principal,
        strict_delete=_parse_bool(_get_env("STRICT_DELETE", "false"), False),
        cors_allow_origins=_parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*")),
        log_level=log_level,
    )
