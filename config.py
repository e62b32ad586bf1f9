"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from acmecore.core import MAX_NONCE_RETRIES
from acmecore.crypto import KeyType
from challenge import ChallengeType

CA_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "zerossl":             "https://acme.zerossl.com/v2/DV90",
    "buypass":             "https://api.buypass.com/acme/directory",
}


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run, so ``a.example,b.example``
    would raise SettingsError.  Handing the raw string through lets the
    field validators split it on commas.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA ─────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "zerossl", "buypass", "custom"] = (
        "letsencrypt_staging"
    )
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (Pebble only)
    USER_AGENT: str = ""           # Appended to certwright/<version>
    NONCE_RETRIES: int = 1

    # ── Account ────────────────────────────────────────────────────────────
    ACCOUNT_EMAIL: str = ""
    ACCOUNT_KEY_TYPE: str = KeyType.EC256.value
    ACCOUNTS_PATH: str = "./.certwright"
    ACCEPT_TOS: bool = False
    # External Account Binding (required by ZeroSSL unless an email is given)
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""

    # ── Certificates ───────────────────────────────────────────────────────
    MANAGED_DOMAINS: List[str] = []
    CERT_STORE_PATH: str = "./certs"
    KEY_TYPE: str = KeyType.RSA2048.value
    BUNDLE: bool = True
    MUST_STAPLE: bool = False
    REUSE_KEY: bool = False
    CERT_TIMEOUT: float = 30.0         # seconds to wait for issuance after finalize
    VALIDATION_TIMEOUT: float = 300.0  # seconds to wait for each challenge verdict

    # ── Renewal ────────────────────────────────────────────────────────────
    RENEWAL_THRESHOLD_DAYS: int = 30
    ARI_ENABLED: bool = False
    ARI_WAIT_TO_RENEW_SECONDS: float = 0.0

    # ── Challenges ─────────────────────────────────────────────────────────
    EXCLUDED_CHALLENGES: List[str] = []

    HTTP_CHALLENGE_MODE: str = "standalone"   # "standalone" | "webroot"
    HTTP_CHALLENGE_IFACE: str = ""
    HTTP_CHALLENGE_PORT: int = 80
    HTTP_PROXY_HEADER: str = ""               # e.g. "X-Forwarded-Host"
    WEBROOT_PATH: Optional[str] = None

    TLS_CHALLENGE_ENABLED: bool = False
    TLS_CHALLENGE_IFACE: str = ""
    TLS_CHALLENGE_PORT: int = 443

    DNS_RESOLVERS: List[str] = []             # host[:port]; empty = /etc/resolv.conf
    DNS_TIMEOUT: float = 10.0
    DNS_PROPAGATION_CHECK: bool = True
    DNS_PROPAGATION_TIMEOUT: float = 60.0
    DNS_POLLING_INTERVAL: float = 2.0
    # Shell hooks publishing and removing the TXT record; DNS-01 is off without one
    DNS_PRESENT_HOOK: str = ""
    DNS_CLEANUP_HOOK: str = ""
    # Seconds between domains when the hooks must handle one record at a time;
    # unset = all records published together
    DNS_SEQUENTIAL_INTERVAL: Optional[float] = None

    # ── Scheduling ─────────────────────────────────────────────────────────
    SCHEDULE_TIME: str = "06:00"  # HH:MM UTC daily renewal check

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("MANAGED_DOMAINS", "DNS_RESOLVERS", "EXCLUDED_CHALLENGES", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("EXCLUDED_CHALLENGES")
    @classmethod
    def validate_challenge_types(cls, v: List[str]) -> List[str]:
        allowed = {t.value for t in ChallengeType}
        unknown = [t for t in v if t not in allowed]
        if unknown:
            raise ValueError(f"EXCLUDED_CHALLENGES: unknown challenge types {unknown}; allowed {sorted(allowed)}")
        return v

    @field_validator("KEY_TYPE", "ACCOUNT_KEY_TYPE")
    @classmethod
    def validate_key_type(cls, v: str) -> str:
        allowed = {k.value for k in KeyType}
        if v.lower() not in allowed:
            raise ValueError(f"key type must be one of {sorted(allowed)}")
        return v.lower()

    @field_validator("HTTP_CHALLENGE_MODE")
    @classmethod
    def validate_challenge_mode(cls, v: str) -> str:
        allowed = {"standalone", "webroot"}
        if v not in allowed:
            raise ValueError(f"HTTP_CHALLENGE_MODE must be one of {allowed}")
        return v

    @field_validator("NONCE_RETRIES")
    @classmethod
    def validate_nonce_retries(cls, v: int) -> int:
        if not 0 <= v <= MAX_NONCE_RETRIES:
            raise ValueError(f"NONCE_RETRIES must be between 0 and {MAX_NONCE_RETRIES}")
        return v

    @model_validator(mode="after")
    def validate_webroot(self) -> "Settings":
        if self.HTTP_CHALLENGE_MODE == "webroot" and not self.WEBROOT_PATH:
            raise ValueError(
                "WEBROOT_PATH must be set when HTTP_CHALLENGE_MODE='webroot'"
            )
        return self

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in CA_PRESETS:
            self.ACME_DIRECTORY_URL = CA_PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self


# Module-level singleton — import and use everywhere.
settings = Settings()
