"""CNAME resolution used to verify that a hostname points at us."""

import logging
from typing import Optional, Sequence

import dns.exception
import dns.resolver

from src.shared.errors import RESOLUTION_FAILED, ResolutionFailure

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    name = name.strip().lower()
    if name.endswith("."):
        name = name[:-1]
    return name


class CnameResolver:
    """Follow a hostname's CNAME chain to its canonical name.

    A single instance is shared by concurrent callers; every lookup is an
    independent query with a bounded lifetime.
    """

    def __init__(
        self,
        nameservers: Optional[Sequence[str]] = None,
        lifetime: float = 5.0,
        resolver: Optional[dns.resolver.Resolver] = None,
    ):
        if resolver is None:
            resolver = dns.resolver.Resolver()
            if nameservers:
                resolver.nameservers = list(nameservers)
        resolver.lifetime = lifetime
        self._resolver = resolver

    def canonical_name(self, hostname: str) -> str:
        """
        Return the canonical name of ``hostname``, lowercased, without the
        trailing dot. A hostname without a CNAME is its own canonical name.

        Raises:
            ResolutionFailure: If the lookup fails for any reason.
        """
        try:
            answer = self._resolver.resolve(hostname, "A", raise_on_no_answer=False)
        except dns.exception.DNSException as e:
            logger.warning("CNAME lookup for %s failed: %s", hostname, e)
            raise ResolutionFailure(hostname, RESOLUTION_FAILED, str(e)) from e
        return normalize_name(answer.canonical_name.to_text())
