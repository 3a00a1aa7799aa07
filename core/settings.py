"""
M-Pesa (Daraja) settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so the gateway configuration can be
built, validated and injected on its own (API dependencies, Celery tasks,
tests).

Environment examples::

    MPESA__ENVIRONMENT=production
    MPESA__SHORTCODE=174379
    MPESA__TIMEOUTS__READ=20
    MPESA__VERIFIER__GRACE_SECONDS=90
"""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"


class MpesaTimeouts(BaseModel):
    connect: float = 5.0
    read: float = 30.0
    write: float = 10.0
    total: float = 30.0


class MpesaRetry(BaseModel):
    # transport-level retries only; business rejections are never retried
    max: int = 2
    base_backoff: float = 0.5
    max_backoff: float = 5.0


class VerifierSettings(BaseModel):
    grace_seconds: int = 60
    poll_interval_seconds: int = 30
    max_poll_attempts: int = 5
    not_found_max_polls: int = 3
    max_wait_seconds: int = 900
    batch_size: int = 50
    sweep_interval_seconds: int = 60


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post callbacks
    reprocess_batch_size: int = 100
    # orphans are replayed with doubling backoff, then left for an operator
    orphan_max_replays: int = 10
    orphan_replay_backoff_seconds: int = 60
    orphan_replay_max_backoff_seconds: int = 3600

    def orphan_replay_delay(self, replay_count: int) -> int:
        delay = self.orphan_replay_backoff_seconds * (2 ** max(replay_count - 1, 0))
        return min(delay, self.orphan_replay_max_backoff_seconds)

    def is_allowed(self, client_ip: Optional[str]) -> bool:
        if not self.ip_allowlist:
            return True
        if not client_ip:
            return False
        try:
            addr = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        for entry in self.ip_allowlist:
            try:
                if addr in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
        return False


@dataclass(frozen=True)
class ConfigurationIssue:
    field: str
    message: str


class MpesaSettings(BaseSettings):
    environment: Literal["sandbox", "production"] = "sandbox"
    base_url: Optional[str] = None

    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    shortcode: Optional[str] = None
    passkey: Optional[str] = None
    callback_url: Optional[str] = None

    transaction_type: str = "CustomerPayBillOnline"
    currency: str = "KES"
    default_description: str = "Payment"
    min_amount: int = 1
    max_amount: int = 70000

    token_http_method: Literal["GET", "POST"] = "GET"
    token_cache_enabled: bool = True
    token_expiry_margin_seconds: int = 60

    timeouts: MpesaTimeouts = Field(default_factory=MpesaTimeouts)
    retry: MpesaRetry = Field(default_factory=MpesaRetry)
    verifier: VerifierSettings = Field(default_factory=VerifierSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    model_config = SettingsConfigDict(
        env_prefix="MPESA__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("token_http_method", mode="before")
    @classmethod
    def _upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.environment == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    @property
    def masked_shortcode(self) -> Optional[str]:
        if not self.shortcode:
            return None
        return f"****{self.shortcode[-4:]}"

    def validate_configuration(self) -> list[ConfigurationIssue]:
        """Return every configuration problem found. Never raises."""
        issues: list[ConfigurationIssue] = []

        required = {
            "shortcode": "M-Pesa business shortcode is not configured",
            "passkey": "M-Pesa passkey is not configured",
            "consumer_key": "M-Pesa consumer key is not configured",
            "consumer_secret": "M-Pesa consumer secret is not configured",
            "callback_url": "M-Pesa callback URL is not configured",
        }
        for name, message in required.items():
            value = getattr(self, name)
            if value is None or not str(value).strip():
                issues.append(ConfigurationIssue(field=name, message=message))

        if self.shortcode and not self.shortcode.strip().isdigit():
            issues.append(ConfigurationIssue(field="shortcode", message="Shortcode must be numeric"))

        if self.callback_url:
            parsed = urlparse(self.callback_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                issues.append(
                    ConfigurationIssue(field="callback_url", message="Callback URL must be an absolute http(s) URL")
                )
            elif self.environment == "production" and parsed.scheme != "https":
                issues.append(
                    ConfigurationIssue(field="callback_url", message="Callback URL must use https in production")
                )

        if self.base_url:
            parsed = urlparse(self.base_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                issues.append(ConfigurationIssue(field="base_url", message="Base URL must be an absolute http(s) URL"))

        if self.min_amount < 1 or self.min_amount > self.max_amount:
            issues.append(
                ConfigurationIssue(field="min_amount", message="Amount bounds must satisfy 1 <= min_amount <= max_amount")
            )

        if self.verifier.max_poll_attempts < 1:
            issues.append(
                ConfigurationIssue(field="verifier.max_poll_attempts", message="Must allow at least one poll")
            )

        return issues

    def is_configured(self) -> bool:
        return not self.validate_configuration()


mpesa_settings = MpesaSettings()
