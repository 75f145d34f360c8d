"""Host policy gatekeeper for on-demand certificate issuance.

Two modes exist and exactly one is active for a process:

* whitelist: a fixed set of ``mta-sts.<domain>`` names, nothing else;
* CNAME + rate limit: any hostname whose CNAME points at our own canonical
  host, at most once per cooldown window.

Every failure inside the CNAME mode fails closed.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from src.shared.config_schema import HostAuthMode, HostPolicyConfig
from src.shared.errors import (
    INVALID_HOSTNAME,
    NOT_A_CNAME,
    NOT_WHITELISTED,
    STORAGE_FAILURE,
    HostPolicyDenied,
    RateLimited,
    ResolutionFailure,
    StorageFailure,
)

from .attempt_store import AttemptStore, sanitize_hostname
from .dns_resolver import CnameResolver, normalize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostDecision:
    """Outcome of :meth:`HostPolicy.authorize`."""

    hostname: str
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls, hostname: str) -> "HostDecision":
        return cls(hostname=hostname, allowed=True)

    @classmethod
    def deny(cls, hostname: str, reason: str) -> "HostDecision":
        return cls(hostname=hostname, allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


class HostPolicy(ABC):
    """Decides whether a certificate may be requested for a hostname."""

    def authorize(self, hostname: str) -> HostDecision:
        try:
            self.check(hostname)
        except HostPolicyDenied as e:
            logger.warning("Denied certificate for %s: %s", e.hostname, e)
            return HostDecision.deny(hostname, e.reason)
        logger.info("Allowed certificate attempt for %s", hostname)
        return HostDecision.allow(hostname)

    async def authorize_async(self, hostname: str) -> HostDecision:
        """Run :meth:`authorize` in a worker thread."""
        return await asyncio.to_thread(self.authorize, hostname)

    @abstractmethod
    def check(self, hostname: str) -> None:
        """Raise :class:`HostPolicyDenied` unless issuance may proceed."""


class WhitelistHostPolicy(HostPolicy):
    """Membership in a fixed whitelist is the only gate; no rate limiting."""

    def __init__(self, domains: Iterable[str], prefix: str = "mta-sts."):
        self.whitelist = frozenset(
            normalize_name(f"{prefix}{domain}") for domain in domains
        )

    def check(self, hostname: str) -> None:
        if normalize_name(hostname) not in self.whitelist:
            raise HostPolicyDenied(hostname, NOT_WHITELISTED)


class CnameHostPolicy(HostPolicy):
    """Allow hosts that CNAME to us, throttled per hostname.

    The read of the last attempt and the write of the new one are not
    atomic: concurrent first calls for the same hostname may all be allowed,
    bounded by the number of concurrent callers.
    """

    def __init__(
        self,
        canonical_host: str,
        store: AttemptStore,
        resolver: CnameResolver,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self.canonical_host = normalize_name(canonical_host)
        self.store = store
        self.resolver = resolver
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock

    def check(self, hostname: str) -> None:
        try:
            name = sanitize_hostname(hostname)
        except ValueError as e:
            raise HostPolicyDenied(hostname, INVALID_HOSTNAME, str(e)) from e

        if name != self.canonical_host:
            target = self.resolver.canonical_name(name)
            if target != self.canonical_host:
                raise ResolutionFailure(
                    name,
                    NOT_A_CNAME,
                    f"incoming host {name} is not a cname for {self.canonical_host}",
                )

        now = self.clock()
        try:
            last = self.store.get_last_attempt(name)
            if last is not None and now - last < self.cooldown_seconds:
                raise RateLimited(name, detail=f"too recently attempted host {name}")
            self.store.record_attempt(name, now)
        except StorageFailure as e:
            logger.error("Attempt store failure for %s: %s", name, e)
            raise HostPolicyDenied(name, STORAGE_FAILURE, str(e)) from e


def create_host_policy(
    config: HostPolicyConfig,
    store: Optional[AttemptStore] = None,
    resolver: Optional[CnameResolver] = None,
) -> HostPolicy:
    """Build the host policy for the active authorization mode."""
    mode = config.active_mode
    if mode is HostAuthMode.WHITELIST:
        policy = WhitelistHostPolicy(config.domains, prefix=config.domain_prefix)
        logger.info("Host policy: whitelist %s", sorted(policy.whitelist))
        return policy
    if mode is HostAuthMode.CNAME:
        if store is None:
            raise ValueError("CNAME host policy requires an attempt store")
        logger.info(
            "Host policy: CNAME to %s, at most one attempt per %ss",
            config.my_real_host,
            config.cooldown_seconds,
        )
        return CnameHostPolicy(
            canonical_host=config.my_real_host,
            store=store,
            resolver=resolver or CnameResolver(),
            cooldown_seconds=config.cooldown_seconds,
        )
    raise ValueError("no host authorization mode configured")
