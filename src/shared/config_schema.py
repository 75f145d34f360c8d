"""Configuration schema with Pydantic for type safety and validation."""

import os
import re
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_COOLDOWN_SECONDS = 24 * 60 * 60
DEFAULT_MAX_AGE = 2419200
STS_POLICY_PATH = "/.well-known/mta-sts.txt"

_DOMAIN_RE = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)*$")


class StsMode(str, Enum):
    """Policy modes a mail domain may publish."""

    TESTING = "testing"
    ENFORCE = "enforce"
    NONE = "none"


class HostAuthMode(str, Enum):
    """How on-demand certificate issuance is authorized."""

    WHITELIST = "whitelist"
    CNAME = "cname"


class AttemptBackend(str, Enum):
    """Storage technologies for per-host issuance attempts."""

    FILE = "file"
    SQLITE = "sqlite"
    REDIS = "redis"


class LogLevel(str, Enum):
    """Logging level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _normalize_host(value: str) -> str:
    value = value.strip().lower()
    if value.endswith("."):
        value = value[:-1]
    return value


class HostPolicyConfig(BaseModel):
    """Which hostnames may trigger certificate issuance."""

    model_config = ConfigDict(frozen=True)

    domains: Tuple[str, ...] = ()
    my_real_host: Optional[str] = None
    mode: Optional[HostAuthMode] = None
    domain_prefix: str = "mta-sts."
    cooldown_seconds: float = Field(default=DEFAULT_COOLDOWN_SECONDS, gt=0)

    @field_validator("domains")
    @classmethod
    def normalize_domains(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        domains = tuple(_normalize_host(d) for d in value if d.strip())
        for domain in domains:
            if "/" in domain or "\\" in domain or ".." in domain:
                raise ValueError(f"invalid whitelist domain: {domain!r}")
        return domains

    @field_validator("my_real_host")
    @classmethod
    def normalize_real_host(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_host(value) or None

    @model_validator(mode="after")
    def validate_mode(self) -> "HostPolicyConfig":
        if self.mode is HostAuthMode.WHITELIST and not self.domains:
            raise ValueError("host_auth_mode 'whitelist' requires --domain")
        if self.mode is HostAuthMode.CNAME and not self.my_real_host:
            raise ValueError("host_auth_mode 'cname' requires --my_real_host")
        return self

    @property
    def active_mode(self) -> Optional[HostAuthMode]:
        """The single authorization mode in force, if any."""
        if self.mode is not None:
            return self.mode
        if self.domains:
            return HostAuthMode.WHITELIST
        if self.my_real_host:
            return HostAuthMode.CNAME
        return None

    @property
    def whitelist(self) -> frozenset:
        return frozenset(f"{self.domain_prefix}{d}" for d in self.domains)


class StsPolicyConfig(BaseModel):
    """Either a locally generated policy or an upstream to mirror."""

    model_config = ConfigDict(frozen=True)

    mirror_from: Optional[str] = None
    mode: StsMode = StsMode.TESTING
    max_age: int = Field(default=DEFAULT_MAX_AGE, ge=0)
    mx: Tuple[str, ...] = ()
    mirror_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @field_validator("mx")
    @classmethod
    def strip_mx(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        patterns = tuple(p.strip() for p in value if p.strip())
        for pattern in patterns:
            if any(c in pattern for c in "\r\n"):
                raise ValueError(f"mx pattern may not contain line breaks: {pattern!r}")
        return patterns

    @field_validator("mirror_from")
    @classmethod
    def normalize_mirror(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_host(value)
        if not value:
            return None
        if len(value) > 245 or not _DOMAIN_RE.match(value):
            raise ValueError("--mirror_sts_from takes a bare domain such as 'google.com'")
        return value

    @model_validator(mode="after")
    def validate_source(self) -> "StsPolicyConfig":
        if self.mirror_from and self.mx:
            raise ValueError("Can only specify either --mirror_sts_from or --sts_mx options.")
        if not self.mirror_from and not self.mx:
            raise ValueError("Must specify either --mirror_sts_from or --sts_mx.")
        return self

    @property
    def mirror_url(self) -> Optional[str]:
        if not self.mirror_from:
            return None
        return f"https://mta-sts.{self.mirror_from}{STS_POLICY_PATH}"


class TlsConfig(BaseModel):
    """Transport selection and certificate acquisition settings."""

    model_config = ConfigDict(frozen=True)

    serve_http: bool = False
    staging: bool = False
    acme_endpoint: Optional[str] = None
    acme_email: Optional[str] = None
    certificate_dir: str = "certificate-dir"
    https_port: int = Field(default=443, ge=1, le=65535)
    acme_http_port: int = Field(default=80, ge=1, le=65535)

    @field_validator("acme_endpoint")
    @classmethod
    def validate_endpoint(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not value.startswith(("https://", "http://")):
            raise ValueError("--acme_endpoint must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def validate_exclusive(self) -> "TlsConfig":
        chosen = [self.serve_http, self.staging, self.acme_endpoint is not None]
        if sum(bool(c) for c in chosen) > 1:
            raise ValueError(
                "Only one of --http, --staging, and --acme_endpoint can be used."
            )
        return self

    @property
    def certs_dir(self) -> str:
        return os.path.join(self.certificate_dir, "certs")


class AttemptStoreConfig(BaseModel):
    """Durable storage for last-attempt timestamps."""

    model_config = ConfigDict(frozen=True)

    backend: AttemptBackend = AttemptBackend.FILE
    path: Optional[str] = None
    redis_host: str = Field(default="localhost", min_length=1)
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0, le=15)
    redis_password_file: Optional[str] = Field(default=None, repr=False)


class ServerConfig(BaseModel):
    """Complete, immutable configuration for one server process."""

    model_config = ConfigDict(frozen=True)

    host_policy: HostPolicyConfig = Field(default_factory=HostPolicyConfig)
    sts_policy: StsPolicyConfig
    tls: TlsConfig = Field(default_factory=TlsConfig)
    attempt_store: AttemptStoreConfig = Field(default_factory=AttemptStoreConfig)
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = False

    @model_validator(mode="after")
    def validate_host_policy(self) -> "ServerConfig":
        # In HTTP mode no certificates are fetched, so no gate is needed.
        if not self.tls.serve_http and self.host_policy.active_mode is None:
            raise ValueError("Must specify --domain or --my_real_host for safety.")
        return self

    def attempt_store_path(self) -> str:
        """Where the attempt tracker keeps its records."""
        if self.attempt_store.path:
            return self.attempt_store.path
        if self.attempt_store.backend is AttemptBackend.SQLITE:
            return os.path.join(self.tls.certificate_dir, "hosts.db")
        return os.path.join(self.tls.certificate_dir, "hosts")
