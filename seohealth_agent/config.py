from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


_HERE = Path(__file__).resolve()
_AGENT_ROOT = _HERE.parents[1]

# Reports and PageSpeed results are fresh for a day; not configurable.
REPORT_TTL_S = 24 * 60 * 60
PAGESPEED_TTL_S = 24 * 60 * 60


def load_env() -> None:
    load_dotenv(_AGENT_ROOT / ".env", override=False)


def _split_keys(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def _keys_from_env(list_var: str, single_var: str) -> tuple[str, ...]:
    keys = _split_keys(os.getenv(list_var))
    single = (os.getenv(single_var) or "").strip()
    if single and single not in keys:
        keys.append(single)
    return tuple(keys)


@dataclass(frozen=True)
class Settings:
    # Reachability probes
    probe_user_agent: str = "Mozilla/5.0 (compatible; SEO-Checker/1.0)"
    probe_timeout_s: float = 10.0
    probe_max_redirects: int = 5

    # Content fetching
    fetch_user_agent: str = "SEOAnalyzerBot/1.0"
    fetch_timeout_s: float = 60.0
    fetch_connect_timeout_s: float = 20.0
    simple_fetch_timeout_s: float = 10.0
    raw_fetch_timeout_s: float = 30.0
    raw_fetch_max_redirects: int = 5

    # Retry middleware
    max_retries: int = 3
    retry_base_delay_ms: int = 2000

    # Checks
    check_workers: int = 8
    check_timeout_s: float = 30.0
    run_deadline_s: float = 90.0
    secondary_timeout_s: float = 15.0
    dns_timeout_s: float = 5.0

    # External services
    pagespeed_timeout_s: float = 60.0
    pagespeed_keys: tuple[str, ...] = ()
    safe_browsing_keys: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            probe_user_agent=os.getenv("SEOHEALTH_PROBE_USER_AGENT", defaults.probe_user_agent),
            fetch_user_agent=os.getenv("SEOHEALTH_USER_AGENT", defaults.fetch_user_agent),
            check_workers=max(1, int(os.getenv("SEOHEALTH_CHECK_WORKERS", str(defaults.check_workers)))),
            check_timeout_s=float(os.getenv("SEOHEALTH_CHECK_TIMEOUT_S", str(defaults.check_timeout_s))),
            run_deadline_s=float(os.getenv("SEOHEALTH_RUN_DEADLINE_S", str(defaults.run_deadline_s))),
            pagespeed_keys=_keys_from_env("SEOHEALTH_PAGESPEED_KEYS", "GOOGLE_API_KEY"),
            safe_browsing_keys=_keys_from_env("SEOHEALTH_SAFE_BROWSING_KEYS", "GOOGLE_SAFE_BROWSING_API_KEY"),
        )


def cors_allow_origins() -> list[str]:
    raw = os.getenv("SEOHEALTH_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def log_level() -> str:
    return os.getenv("SEOHEALTH_LOG_LEVEL", "INFO").upper()
