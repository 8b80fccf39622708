"""
Configuration for quote-intake.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-quote-intake"


def _from_env(value: str | None, env_name: str | None) -> str | None:
    """Return an inline secret, else the named environment variable."""
    if value:
        return value
    if env_name:
        return os.environ.get(env_name) or None
    return None


@dataclass
class RateLimitRule:
    """One rolling-window limit on submissions."""

    name: str
    key_source: str  # ip, fingerprint, email
    max_count: int
    window_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "key_source": self.key_source,
            "max_count": self.max_count,
            "window_seconds": self.window_seconds,
        }


def default_rate_limits() -> list[RateLimitRule]:
    return [
        RateLimitRule("quote_request_ip", "ip", 5, 600),
        RateLimitRule("quote_request_fingerprint", "fingerprint", 10, 3600),
        RateLimitRule("quote_request_email", "email", 5, 3600),
    ]


@dataclass
class CaptchaConfig:
    """Cloudflare Turnstile verification."""

    secret_key: str | None = None
    secret_key_env: str | None = None
    verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    timeout_seconds: float = 10.0
    # Small deployments without a Turnstile secret still accept submissions.
    fail_open_when_unconfigured: bool = True
    min_submit_seconds: float = 3.0

    def get_secret_key(self) -> str | None:
        return _from_env(self.secret_key, self.secret_key_env)


@dataclass
class LLMConfig:
    """Text-completion provider configuration."""

    provider: str = "anthropic"  # anthropic, openai
    model: str | None = None
    api_key: str | None = None
    api_key_env: str | None = None
    gateway_account_id: str | None = None
    gateway_name: str | None = None
    timeout_seconds: float = 15.0
    max_tokens: int = 2048

    def get_api_key(self) -> str | None:
        """Get API key from config or environment."""
        return _from_env(self.api_key, self.api_key_env)


@dataclass
class VectorConfig:
    """Vector similarity index (Cloudflare Vectorize + OpenAI embeddings)."""

    enabled: bool = False
    account_id: str | None = None
    index_name: str | None = None
    api_token: str | None = None
    api_token_env: str | None = None
    embedding_api_key: str | None = None
    embedding_api_key_env: str | None = None
    embedding_model: str = "text-embedding-3-small"
    min_score: float = 0.65
    max_results: int = 10
    fallback_limit: int = 5
    timeout_seconds: float = 10.0

    def get_api_token(self) -> str | None:
        return _from_env(self.api_token, self.api_token_env)

    def get_embedding_api_key(self) -> str | None:
        return _from_env(self.embedding_api_key, self.embedding_api_key_env)


@dataclass
class VerificationConfig:
    """E-mail verification tokens and resend cooldown."""

    token_ttl_seconds: int = 24 * 3600
    resend_cooldown_seconds: int = 60
    verify_path: str = "/aanvragen/verify"
    default_locale: str = "nl"


@dataclass
class NotificationConfig:
    """Outbound e-mail API and team webhook."""

    email_api_endpoint: str | None = None
    email_api_key: str | None = None
    email_api_key_env: str | None = None
    discord_webhook_url: str | None = None
    discord_webhook_url_env: str | None = None
    app_url: str = "http://127.0.0.1:8001"
    timeout_seconds: float = 10.0

    def get_email_api_key(self) -> str | None:
        return _from_env(self.email_api_key, self.email_api_key_env)

    def get_discord_webhook_url(self) -> str | None:
        return _from_env(self.discord_webhook_url, self.discord_webhook_url_env)


@dataclass
class AnalysisConfig:
    """Triage analysis cache."""

    cache_ttl_days: int = 90
    run_on_submit: bool = True


@dataclass
class AuditLogConfig:
    """Bounded audit log retention."""

    max_entries: int = 500
    ttl_seconds: int = 30 * 24 * 3600


@dataclass
class IntakeConfig:
    """Complete quote-intake configuration."""

    db_path: Path = field(default_factory=lambda: Path("quote_intake.db"))
    base_url: str = "http://127.0.0.1:8001"
    # Only behind a proxy that overwrites CF-Connecting-IP / X-Forwarded-For / X-Real-IP
    trust_proxy_headers: bool = False

    rate_limits: list[RateLimitRule] = field(default_factory=default_rate_limits)
    captcha: CaptchaConfig = field(default_factory=CaptchaConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    audit_log: AuditLogConfig = field(default_factory=AuditLogConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IntakeConfig":
        """Create config from a dictionary (e.g., the plugin block of datasette.yaml)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        if "base_url" in data:
            config.base_url = data["base_url"].rstrip("/")
        if "trust_proxy_headers" in data:
            config.trust_proxy_headers = bool(data["trust_proxy_headers"])

        if "rate_limits" in data:
            config.rate_limits = [
                RateLimitRule(
                    name=rule.get("name", f"{rule['key_source']}_limit"),
                    key_source=rule["key_source"],
                    max_count=int(rule["max_count"]),
                    window_seconds=int(rule["window_seconds"]),
                )
                for rule in data["rate_limits"] or []
            ]

        if "captcha" in data:
            c = data["captcha"]
            config.captcha = CaptchaConfig(
                secret_key=c.get("secret_key"),
                secret_key_env=c.get("secret_key_env"),
                verify_url=c.get("verify_url", config.captcha.verify_url),
                timeout_seconds=c.get("timeout_seconds", 10.0),
                fail_open_when_unconfigured=c.get("fail_open_when_unconfigured", True),
                min_submit_seconds=c.get("min_submit_seconds", 3.0),
            )

        if "llm" in data:
            llm = data["llm"]
            config.llm = LLMConfig(
                provider=llm.get("provider", "anthropic"),
                model=llm.get("model"),
                api_key=llm.get("api_key"),
                api_key_env=llm.get("api_key_env"),
                gateway_account_id=llm.get("gateway_account_id"),
                gateway_name=llm.get("gateway_name"),
                timeout_seconds=llm.get("timeout_seconds", 15.0),
                max_tokens=llm.get("max_tokens", 2048),
            )

        if "vector" in data:
            v = data["vector"]
            config.vector = VectorConfig(
                enabled=v.get("enabled", False),
                account_id=v.get("account_id"),
                index_name=v.get("index_name"),
                api_token=v.get("api_token"),
                api_token_env=v.get("api_token_env"),
                embedding_api_key=v.get("embedding_api_key"),
                embedding_api_key_env=v.get("embedding_api_key_env"),
                embedding_model=v.get("embedding_model", "text-embedding-3-small"),
                min_score=v.get("min_score", 0.65),
                max_results=v.get("max_results", 10),
                fallback_limit=v.get("fallback_limit", 5),
                timeout_seconds=v.get("timeout_seconds", 10.0),
            )

        if "verification" in data:
            ver = data["verification"]
            config.verification = VerificationConfig(
                token_ttl_seconds=ver.get("token_ttl_seconds", 24 * 3600),
                resend_cooldown_seconds=ver.get("resend_cooldown_seconds", 60),
                verify_path=ver.get("verify_path", "/aanvragen/verify"),
                default_locale=ver.get("default_locale", "nl"),
            )

        if "notifications" in data:
            n = data["notifications"]
            config.notifications = NotificationConfig(
                email_api_endpoint=n.get("email_api_endpoint"),
                email_api_key=n.get("email_api_key"),
                email_api_key_env=n.get("email_api_key_env"),
                discord_webhook_url=n.get("discord_webhook_url"),
                discord_webhook_url_env=n.get("discord_webhook_url_env"),
                app_url=n.get("app_url", config.base_url),
                timeout_seconds=n.get("timeout_seconds", 10.0),
            )

        if "analysis" in data:
            a = data["analysis"]
            config.analysis = AnalysisConfig(
                cache_ttl_days=a.get("cache_ttl_days", 90),
                run_on_submit=a.get("run_on_submit", True),
            )

        if "audit_log" in data:
            al = data["audit_log"]
            config.audit_log = AuditLogConfig(
                max_entries=al.get("max_entries", 500),
                ttl_seconds=al.get("ttl_seconds", 30 * 24 * 3600),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "IntakeConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        plugin_config = data.get("plugins", {}).get(PLUGIN_NAME, {})
        return cls.from_dict(plugin_config)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a JSON-safe dictionary. Secrets are left out."""
        return {
            "db_path": str(self.db_path),
            "base_url": self.base_url,
            "trust_proxy_headers": self.trust_proxy_headers,
            "rate_limits": [rule.to_dict() for rule in self.rate_limits],
            "captcha": {
                "configured": bool(self.captcha.get_secret_key()),
                "fail_open_when_unconfigured": self.captcha.fail_open_when_unconfigured,
                "min_submit_seconds": self.captcha.min_submit_seconds,
            },
            "llm": {
                "provider": self.llm.provider,
                "model": self.llm.model,
                "configured": bool(self.llm.get_api_key()),
                "gateway": bool(self.llm.gateway_account_id and self.llm.gateway_name),
            },
            "vector": {
                "enabled": self.vector.enabled,
                "index_name": self.vector.index_name,
                "min_score": self.vector.min_score,
            },
            "verification": {
                "token_ttl_seconds": self.verification.token_ttl_seconds,
                "resend_cooldown_seconds": self.verification.resend_cooldown_seconds,
            },
            "analysis": {
                "cache_ttl_days": self.analysis.cache_ttl_days,
                "run_on_submit": self.analysis.run_on_submit,
            },
        }
