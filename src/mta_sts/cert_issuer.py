"""
Certificate acquisition for hostnames approved by the host policy.
Delegates the ACME exchange to certbot running in standalone mode.
"""

import logging
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from cryptography import x509

from src.shared.errors import CertificateIssuanceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificatePaths:
    certfile: str
    keyfile: str


def certificate_not_after(certfile: str) -> float:
    """
    Return the expiry of the leaf certificate in ``certfile`` as POSIX seconds.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file holds no parseable PEM certificate.
    """
    with open(certfile, "rb") as f:
        cert = x509.load_pem_x509_certificate(f.read())
    return cert.not_valid_after_utc.timestamp()


class CertificateIssuer(ABC):
    @abstractmethod
    def cached(self, hostname: str) -> Optional[CertificatePaths]:
        """Return an already obtained certificate, if any."""

    @abstractmethod
    def issue(self, hostname: str) -> CertificatePaths:
        """Obtain a certificate or raise :class:`CertificateIssuanceError`."""


class CertbotIssuer(CertificateIssuer):
    """Obtain certificates with certbot's standalone HTTP-01 authenticator."""

    def __init__(
        self,
        certs_dir: str,
        email: Optional[str] = None,
        staging: bool = False,
        acme_endpoint: Optional[str] = None,
        http_port: int = 80,
        timeout: float = 600,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        Initialize the issuer.

        Args:
            certs_dir: certbot config directory; certificates land in ``live/``
            email: ACME account contact address
            staging: Use the Let's Encrypt staging environment
            acme_endpoint: Custom ACME directory URL
            http_port: Port certbot binds for the HTTP-01 challenge
            timeout: Seconds before a certbot run is abandoned
            runner: Callable used to run certbot (``subprocess.run``)
        """
        self.certs_dir = certs_dir
        self.email = email
        self.staging = staging
        self.acme_endpoint = acme_endpoint
        self.http_port = http_port
        self.timeout = timeout
        self._run = runner

    def _paths(self, hostname: str) -> CertificatePaths:
        live = os.path.join(self.certs_dir, "live", hostname)
        return CertificatePaths(
            certfile=os.path.join(live, "fullchain.pem"),
            keyfile=os.path.join(live, "privkey.pem"),
        )

    def cached(self, hostname: str) -> Optional[CertificatePaths]:
        paths = self._paths(hostname)
        if os.path.isfile(paths.certfile) and os.path.isfile(paths.keyfile):
            return paths
        return None

    def build_command(self, hostname: str) -> List[str]:
        cmd = [
            sys.executable,
            "-m",
            "certbot",
            "certonly",
            "--standalone",
            "--preferred-challenges",
            "http",
            "--http-01-port",
            str(self.http_port),
            "--non-interactive",
            "--agree-tos",
            "--force-renewal",
            "--config-dir",
            self.certs_dir,
            "--work-dir",
            os.path.join(self.certs_dir, "work"),
            "--logs-dir",
            os.path.join(self.certs_dir, "logs"),
            "--cert-name",
            hostname,
            "-d",
            hostname,
        ]
        if self.email:
            cmd += ["--email", self.email]
        else:
            cmd.append("--register-unsafely-without-email")
        if self.staging:
            cmd.append("--staging")
        elif self.acme_endpoint:
            cmd += ["--server", self.acme_endpoint]
        return cmd

    def issue(self, hostname: str) -> CertificatePaths:
        logger.info("Obtaining certificate for %s", hostname)
        try:
            os.makedirs(self.certs_dir, mode=0o700, exist_ok=True)
            result = self._run(
                self.build_command(hostname),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CertificateIssuanceError(
                f"Certificate request timed out for {hostname}"
            ) from e
        except OSError as e:
            raise CertificateIssuanceError(
                f"Could not run certbot for {hostname}: {e}"
            ) from e

        if result.returncode != 0:
            logger.error("certbot stderr for %s: %s", hostname, result.stderr)
            raise CertificateIssuanceError(
                f"certbot exited with {result.returncode} for {hostname}"
            )

        paths = self.cached(hostname)
        if paths is None:
            raise CertificateIssuanceError(
                f"certbot succeeded but no certificate found for {hostname}"
            )
        logger.info("Certificate obtained for %s", hostname)
        return paths
