"""On-demand certificates selected during the TLS handshake.

The SNI callback runs on the event loop, so it never blocks on DNS or on
certificate issuance. A handshake for a hostname without a usable
certificate is refused while authorization and issuance run in a worker
thread; once the certificate is cached, later handshakes for that name
succeed. Certificates close to expiry keep being served while a
replacement is requested through the same authorization gate.
"""

import logging
import ssl
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from src.shared.errors import CertificateIssuanceError

from .attempt_store import sanitize_hostname
from .cert_issuer import CertificateIssuer, CertificatePaths, certificate_not_after
from .host_policy import HostPolicy

logger = logging.getLogger(__name__)

RENEW_BEFORE_SECONDS = 30 * 24 * 60 * 60
FAILURE_BACKOFF_SECONDS = 60 * 60


def new_server_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


@dataclass(frozen=True)
class CachedCertificate:
    context: ssl.SSLContext
    not_after: float


class OnDemandCertificates:
    """Gate every certificate acquisition on :meth:`HostPolicy.authorize`."""

    def __init__(
        self,
        host_policy: HostPolicy,
        issuer: CertificateIssuer,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
        renew_before_seconds: float = RENEW_BEFORE_SECONDS,
        failure_backoff_seconds: float = FAILURE_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.host_policy = host_policy
        self.issuer = issuer
        self.renew_before_seconds = renew_before_seconds
        self.failure_backoff_seconds = failure_backoff_seconds
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cert-acquire"
        )
        self._certificates: Dict[str, CachedCertificate] = {}
        self._pending: Set[str] = set()
        self._failed_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def server_context(self) -> ssl.SSLContext:
        """The context handed to the listening socket."""
        context = new_server_context()
        context.sni_callback = self._sni_callback
        return context

    def _load(self, hostname: str, paths: CertificatePaths) -> CachedCertificate:
        context = new_server_context()
        context.load_cert_chain(paths.certfile, paths.keyfile)
        entry = CachedCertificate(context, certificate_not_after(paths.certfile))
        with self._lock:
            self._certificates[hostname] = entry
        return entry

    def certificate_for(self, hostname: str) -> Optional[CachedCertificate]:
        """The cached certificate for ``hostname``, loading it from disk if needed."""
        with self._lock:
            entry = self._certificates.get(hostname)
        if entry is not None:
            return entry
        paths = self.issuer.cached(hostname)
        if paths is None:
            return None
        return self._load(hostname, paths)

    def _sni_callback(self, ssl_object, server_name, base_context):
        if not server_name:
            logger.warning("TLS handshake without server name refused")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            hostname = sanitize_hostname(server_name)
        except ValueError:
            logger.warning("TLS handshake for invalid name %r refused", server_name)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            entry = self.certificate_for(hostname)
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error("Cannot load certificate for %s: %s", hostname, e)
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR

        now = self.clock()
        if entry is None or now >= entry.not_after:
            if entry is not None:
                logger.warning("Certificate for %s has expired", hostname)
            self.request_certificate(hostname)
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        if entry.not_after - now < self.renew_before_seconds:
            self.request_certificate(hostname)
        ssl_object.context = entry.context
        return None

    def request_certificate(self, hostname: str) -> Optional[Future]:
        """Start acquisition for ``hostname``.

        Returns ``None`` when one is already running or the last one failed
        less than ``failure_backoff_seconds`` ago.
        """
        with self._lock:
            if hostname in self._pending:
                return None
            failed_at = self._failed_at.get(hostname)
            if (
                failed_at is not None
                and self.clock() - failed_at < self.failure_backoff_seconds
            ):
                return None
            self._pending.add(hostname)
        logger.info("Requesting certificate for %s", hostname)
        return self._executor.submit(self._acquire, hostname)

    def _acquire(self, hostname: str) -> bool:
        acquired = False
        try:
            decision = self.host_policy.authorize(hostname)
            if not decision.allowed:
                return False
            paths = self.issuer.issue(hostname)
            self._load(hostname, paths)
            acquired = True
            return True
        except CertificateIssuanceError as e:
            logger.error("Certificate acquisition failed for %s: %s", hostname, e)
            return False
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error("Cannot load new certificate for %s: %s", hostname, e)
            return False
        finally:
            with self._lock:
                self._pending.discard(hostname)
                if acquired:
                    self._failed_at.pop(hostname, None)
                else:
                    self._failed_at[hostname] = self.clock()

    def close(self) -> None:
        self._executor.shutdown(wait=False)
