"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Threatwatch happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. nvd_api_key -> NVD_API_KEY). Type coercion and validation are built in.

  Nested policy models: the scoring bonuses and vendor risk penalties are
      policy constants, not algorithm. They live in ScoringPolicy / RiskPolicy
      and are overridable per field with a double-underscore env var, e.g.
      RISK_POLICY__BREACH_HIGH_PENALTY=20 or SCORING__VERSION_BONUS=15.

  @model_validator(mode="after"): resolves the NVD request interval from the
      presence of an API key when it is not set explicitly.

Layer rule: core/ is the kernel. This module may not import from api/,
intel/, cmdb/, or cache/.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("threatwatch.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'threatwatch.db'}"

NVD_API = "https://services.nvd.nist.gov/rest/json/cves/2.0"
CISA_KEV_URL = "https://www.cisa.gov/sites/default/files/feeds/known_exploited_vulnerabilities.json"
HIBP_API = "https://haveibeenpwned.com/api/v3/breaches"


def now_iso() -> str:
    """Current UTC time as ISO 8601 with fixed microsecond precision.

    Fixed precision keeps the string lexicographically ordered, which the
    stores rely on for "discovered after" comparisons.
    """
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class ScoringPolicy(BaseModel):
    """Weights for the keyword/CPE/version match score (0-100)."""

    keyword_base: int = 40
    keyword_step: int = 10
    keyword_cap: int = 70
    cpe_exact_bonus: int = 20
    cpe_product_bonus: int = 10
    version_bonus: int = 10
    min_match_score: int = 50
    # Vendor path: keyword search seeded from the vendor name alone.
    vendor_base: int = 60
    search_keywords: int = 3


class RiskPolicy(BaseModel):
    """Vendor risk penalties. Score starts at 100 and is floored at 0.

    Thresholds are strict: a CVSS of exactly 9.0 takes the high penalty,
    not the critical one.
    """

    cve_critical_threshold: float = 9.0
    cve_high_threshold: float = 7.0
    cve_medium_threshold: float = 4.0
    cve_critical_penalty: int = 10
    cve_high_penalty: int = 5
    cve_medium_penalty: int = 2
    cve_low_penalty: int = 0

    breach_high_threshold: int = 80
    breach_medium_threshold: int = 50
    breach_high_penalty: int = 15
    breach_medium_penalty: int = 8
    breach_low_penalty: int = 4

    @field_validator(
        "cve_critical_penalty",
        "cve_high_penalty",
        "cve_medium_penalty",
        "cve_low_penalty",
        "breach_high_penalty",
        "breach_medium_penalty",
        "breach_low_penalty",
    )
    @classmethod
    def non_negative(cls, value: int) -> int:
        # A negative penalty would let an extra finding raise the score.
        if value < 0:
            raise ValueError("risk penalties must be >= 0")
        return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Vulnerability feeds
    # ------------------------------------------------------------------

    nvd_api_url: str = NVD_API
    # Optional. With a key NVD allows 50 req/30s instead of 5 req/30s.
    nvd_api_key: Optional[str] = None
    cisa_kev_url: str = CISA_KEV_URL
    feed_timeout_seconds: float = 5.0
    # Minimum spacing between NVD calls. None -> derived from nvd_api_key.
    nvd_request_interval: Optional[float] = None
    nvd_results_per_page: int = 50
    cve_cache_ttl_hours: int = 24

    # ------------------------------------------------------------------
    # Breach history
    # ------------------------------------------------------------------

    breach_source: str = "catalog"  # "catalog" | "hibp"
    hibp_api_url: str = HIBP_API

    # ------------------------------------------------------------------
    # Scheduler and alerting
    # ------------------------------------------------------------------

    scheduler_enabled: bool = True
    kev_sync_interval_minutes: int = 24 * 60
    asset_scan_interval_minutes: int = 12 * 60
    alert_min_cvss: float = 7.0
    alert_webhook_url: str = ""
    alert_webhook_secret: str = ""

    # ------------------------------------------------------------------
    # Result caps
    # ------------------------------------------------------------------

    max_asset_matches: int = 10
    max_vendor_matches: int = 15

    # ------------------------------------------------------------------
    # HTTP adapter
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:3000"])

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    scoring: ScoringPolicy = Field(default_factory=ScoringPolicy)
    risk_policy: RiskPolicy = Field(default_factory=RiskPolicy)

    @model_validator(mode="after")
    def resolve_request_interval(self) -> "Settings":
        """Pick the NVD spacing from the published rate limits when unset.

        Without a key NVD allows roughly one request every six seconds; with
        a key the allowance is ten times larger.
        """
        if self.nvd_request_interval is None:
            self.nvd_request_interval = 0.6 if self.nvd_api_key else 6.0
        if self.breach_source not in ("catalog", "hibp"):
            logger.warning("Unknown BREACH_SOURCE %r -- falling back to catalog", self.breach_source)
            self.breach_source = "catalog"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
