"""Configuration loading from command-line flags and environment variables."""

import argparse
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .config_schema import DEFAULT_COOLDOWN_SECONDS, DEFAULT_MAX_AGE, ServerConfig
from .errors import ConfigurationConflict

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_duration(value: str) -> float:
    """Parse ``24h``, ``1h30m``, ``90s`` or a bare number of seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated option, dropping empty entries."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _validation_messages(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        msg = str(error.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, ") :]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


class ConfigLoader:
    """Build a :class:`ServerConfig` once at startup.

    Every flag falls back to an environment variable so the server can be
    driven entirely from a container environment. Problems are collected and
    raised together as a single :class:`ConfigurationConflict`.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.env: Dict[str, str] = dict(os.environ if env is None else env)

    def _env(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self.env.get(name)
        return default if value is None or value == "" else value

    def _env_flag(self, name: str) -> bool:
        return str(self.env.get(name, "")).strip().lower() in _TRUE_VALUES

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="mta-sts-server",
            description="Serve an MTA-STS policy, fetching certificates on demand.",
        )
        parser.add_argument(
            "--domain",
            default=self._env("DOMAIN", ""),
            help="Domain(s) for which to serve policy (comma-separated).",
        )
        parser.add_argument(
            "--certificate_dir",
            default=self._env("CERTIFICATE_DIR", "certificate-dir"),
            help="Directory in which to store certificates and attempt records.",
        )
        parser.add_argument(
            "--my_real_host",
            default=self._env("MY_REAL_HOST", ""),
            help="If set, ensure that any host we haven't seen has a CNAME to us.",
        )
        parser.add_argument(
            "--host_auth_mode",
            default=self._env("HOST_AUTH_MODE"),
            help="Force host authorization mode: 'whitelist' or 'cname'.",
        )
        parser.add_argument(
            "--try_cert_no_more_often_than",
            default=self._env("TRY_CERT_NO_MORE_OFTEN_THAN", "24h"),
            help="Don't try to request a cert for a host more often than this.",
        )
        parser.add_argument(
            "--http",
            action="store_true",
            default=self._env_flag("SERVE_HTTP"),
            help="Serve plain HTTP (for use behind an HTTPS-terminating proxy).",
        )
        parser.add_argument(
            "--staging",
            action="store_true",
            default=self._env_flag("ACME_STAGING"),
            help="Use the Let's Encrypt staging environment.",
        )
        parser.add_argument(
            "--acme_endpoint",
            default=self._env("ACME_ENDPOINT"),
            help="Custom ACME directory URL.",
        )
        parser.add_argument(
            "--acme_email",
            default=self._env("ACME_EMAIL"),
            help="Contact address for the ACME account.",
        )
        parser.add_argument(
            "--mirror_sts_from",
            default=self._env("MIRROR_STS_FROM"),
            help="If set (e.g. 'google.com'), proxy the STS policy for this domain.",
        )
        parser.add_argument(
            "--sts_mode",
            default=self._env("STS_MODE", "testing"),
            help="STS mode: 'testing', 'enforce' or 'none'.",
        )
        parser.add_argument(
            "--sts_mx",
            default=self._env("STS_MX", ""),
            help="Comma-separated 'mx' patterns.",
        )
        parser.add_argument(
            "--sts_max_age",
            default=self._env("STS_MAX_AGE", str(DEFAULT_MAX_AGE)),
            help="STS 'max_age' in seconds.",
        )
        parser.add_argument(
            "--mirror_timeout",
            default=self._env("MIRROR_TIMEOUT", "10s"),
            help="Timeout for fetching the mirrored policy.",
        )
        parser.add_argument(
            "--attempt_store",
            default=self._env("ATTEMPT_STORE", "file"),
            help="Attempt record backend: 'file', 'sqlite' or 'redis'.",
        )
        parser.add_argument(
            "--attempt_store_path",
            default=self._env("ATTEMPT_STORE_PATH"),
            help="Override the location of the file or sqlite attempt store.",
        )
        parser.add_argument(
            "--log_level",
            default=self._env("LOG_LEVEL", "INFO"),
            help="Logging level.",
        )
        return parser

    def _number(self, raw: Any, flag: str, errors: List[str], cast=int) -> Any:
        try:
            return cast(str(raw).strip())
        except (TypeError, ValueError):
            errors.append(f"{flag}: invalid value {raw!r}")
            return None

    def _duration(self, raw: str, flag: str, errors: List[str]) -> Optional[float]:
        try:
            return parse_duration(raw)
        except ValueError as e:
            errors.append(f"{flag}: {e}")
            return None

    def load(self, argv: Optional[Sequence[str]] = None) -> ServerConfig:
        """
        Parse flags and environment into a validated configuration.

        Args:
            argv: Command-line arguments (without the program name).

        Returns:
            The immutable server configuration.

        Raises:
            ConfigurationConflict: If any option is invalid or options conflict.
        """
        args = self.build_parser().parse_args(argv)
        errors: List[str] = []

        cooldown = self._duration(
            args.try_cert_no_more_often_than, "--try_cert_no_more_often_than", errors
        )
        mirror_timeout = self._duration(args.mirror_timeout, "--mirror_timeout", errors)
        max_age = self._number(args.sts_max_age, "--sts_max_age", errors)
        port = self._number(self._env("PORT", "8080"), "PORT", errors)
        https_port = self._number(self._env("HTTPS_PORT", "443"), "HTTPS_PORT", errors)
        acme_http_port = self._number(
            self._env("ACME_HTTP_PORT", "80"), "ACME_HTTP_PORT", errors
        )
        redis_port = self._number(self._env("REDIS_PORT", "6379"), "REDIS_PORT", errors)
        redis_db = self._number(self._env("REDIS_DB", "0"), "REDIS_DB", errors)
        if errors:
            raise ConfigurationConflict(errors)

        raw: Dict[str, Any] = {
            "host_policy": {
                "domains": tuple(split_list(args.domain)),
                "my_real_host": args.my_real_host or None,
                "mode": (args.host_auth_mode or "").strip().lower() or None,
                "cooldown_seconds": (
                    cooldown if cooldown is not None else DEFAULT_COOLDOWN_SECONDS
                ),
            },
            "sts_policy": {
                "mirror_from": args.mirror_sts_from or None,
                "mode": (args.sts_mode or "testing").strip().lower(),
                "max_age": max_age,
                "mx": tuple(split_list(args.sts_mx)),
                "mirror_timeout_seconds": mirror_timeout,
            },
            "tls": {
                "serve_http": args.http,
                "staging": args.staging,
                "acme_endpoint": args.acme_endpoint or None,
                "acme_email": args.acme_email or None,
                "certificate_dir": args.certificate_dir,
                "https_port": https_port,
                "acme_http_port": acme_http_port,
            },
            "attempt_store": {
                "backend": (args.attempt_store or "file").strip().lower(),
                "path": args.attempt_store_path or None,
                "redis_host": self._env("REDIS_HOST", "localhost"),
                "redis_port": redis_port,
                "redis_db": redis_db,
                "redis_password_file": self._env("REDIS_PASSWORD_FILE"),
            },
            "port": port,
            "log_level": (args.log_level or "INFO").strip().upper(),
            "json_logs": self._env("LOG_FORMAT", "text").lower() == "json",
        }

        try:
            config = ServerConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationConflict(_validation_messages(e)) from e

        host_policy = config.host_policy
        if host_policy.mode is None and host_policy.domains and host_policy.my_real_host:
            logger.warning(
                "Both --domain and --my_real_host given; using the domain whitelist."
            )
        logger.debug("Configuration loaded: %r", config)
        return config
