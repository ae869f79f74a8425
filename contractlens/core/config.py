"""Core configuration for the contractlens engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GUARD_PATTERNS: tuple[str, ...] = (
    "assert_owner(...)",
    "$S.assert_owner(...)",
    "assert_one_yocto()",
    "require!(env::predecessor_account_id() == $X, ...)",
    "assert!(env::predecessor_account_id() == $X, ...)",
    "assert_eq!(env::predecessor_account_id(), $X, ...)",
    "require!($X == env::predecessor_account_id(), ...)",
    "assert!($X == env::predecessor_account_id(), ...)",
    "assert_eq!($X, env::predecessor_account_id(), ...)",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CONTRACTLENS_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "contractlens"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "WARNING"

    # ── Source loading ───────────────────────────────────────────────────
    source_extensions: list[str] = Field(default_factory=lambda: [".rs"])
    max_file_size_bytes: int = 2_000_000
    exclude_dirs: list[str] = Field(
        default_factory=lambda: [".git", "target", "node_modules"]
    )

    # ── Matching ─────────────────────────────────────────────────────────
    match_budget: int = 200_000
    max_workers: int = 4

    # ── Classification / propagation ─────────────────────────────────────
    guard_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_GUARD_PATTERNS))
    auto_confirm_variants: bool = False

    # ── Reporting ────────────────────────────────────────────────────────
    default_fail_on: str = "high"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
