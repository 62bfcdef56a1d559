"""Security headers for JSON API responses.

- HSTS (Strict-Transport-Security)
- X-Content-Type-Options: nosniff
- X-Frame-Options: DENY
- Cache-Control: no-store (balances and ledger history must not be cached)
- Referrer-Policy: no-referrer
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SecurityHeadersConfig:
    """Configuration for security headers."""

    hsts_max_age: int = 31_536_000  # 1 year
    hsts_include_subdomains: bool = True
    frame_options: str = "DENY"
    content_type_options: str = "nosniff"
    cache_control: str = "no-store"
    referrer_policy: str = "no-referrer"


class SecurityHeadersMiddleware:
    """Builds the header set applied to every response by the app factory."""

    def __init__(self, config: SecurityHeadersConfig | None = None) -> None:
        self._config = config or SecurityHeadersConfig()

    def get_headers(self) -> dict[str, str]:
        cfg = self._config
        hsts_value = f"max-age={cfg.hsts_max_age}"
        if cfg.hsts_include_subdomains:
            hsts_value += "; includeSubDomains"
        return {
            "Strict-Transport-Security": hsts_value,
            "X-Content-Type-Options": cfg.content_type_options,
            "X-Frame-Options": cfg.frame_options,
            "Cache-Control": cfg.cache_control,
            "Referrer-Policy": cfg.referrer_policy,
        }

