"""
host_intel.py

Best-effort network signals for a hostname: DNS answer and TLS certificate age.

Public function:
    collect(host: str) -> HostIntel

collect() never raises. A probe that fails leaves its fields as None and the
other probes still run, so the caller always gets a usable (possibly
degraded) record.
"""

import logging
import socket
import ssl
from datetime import datetime, timezone
from typing import Optional, Tuple

import whois
from cryptography import x509

from .. import config
from ..models import HostIntel

logger = logging.getLogger("host_intel")

HTTPS_PORT = 443


def _top_level_label(host: str) -> Optional[str]:
    host = host.rstrip(".")
    if "." not in host:
        return None
    return host.rsplit(".", 1)[1] or None


def _resolve_ip(host: str) -> Optional[str]:
    """Return the first address DNS gives for host (IPv4 or IPv6)."""
    try:
        answers = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError, OSError) as e:
        logger.debug("DNS resolution failed for %s: %s", host, e)
        return None
    for family, _type, _proto, _canon, sockaddr in answers:
        if family in (socket.AF_INET, socket.AF_INET6):
            return sockaddr[0]
    return None


def _fetch_certificate(host: str, port: int = HTTPS_PORT,
                       connect_timeout: float = config.CONNECT_TIMEOUT,
                       read_timeout: float = config.READ_TIMEOUT) -> Optional[bytes]:
    """Fetch the server's leaf certificate (DER bytes) or None."""
    ctx = ssl.create_default_context()
    try:
        with socket.create_connection((host, port), timeout=connect_timeout) as sock:
            sock.settimeout(read_timeout)
            with ctx.wrap_socket(sock, server_hostname=host) as conn:
                return conn.getpeercert(binary_form=True)
    except (OSError, ssl.SSLError, ValueError) as e:
        logger.debug("TLS probe failed for %s:%s: %s", host, port, e)
        return None


def _certificate_facts(der_cert: bytes, now: datetime) -> Tuple[int, str]:
    """Return (age in whole days floored at zero, issuer DN) for a DER certificate."""
    cert = x509.load_der_x509_certificate(der_cert)
    age_days = (now - cert.not_valid_before_utc).days
    return max(0, age_days), cert.issuer.rfc4514_string()


def _domain_age_days(host: str, now: datetime) -> Optional[int]:
    """Return domain age in days using WHOIS (may fail if registrar blocks)."""
    try:
        w = whois.whois(host)
        creation_date = w.creation_date
        if isinstance(creation_date, list):  # sometimes it's a list
            creation_date = creation_date[0]
        if not isinstance(creation_date, datetime):
            return None
        if creation_date.tzinfo is None:
            creation_date = creation_date.replace(tzinfo=timezone.utc)
        return max(0, (now - creation_date).days)
    except Exception as e:
        logger.debug("WHOIS lookup failed for %s: %s", host, e)
        return None


def collect(host: str, whois_enabled: bool = config.WHOIS_ENABLED) -> HostIntel:
    """
    Collect DNS and TLS signals for host.

    Returns a HostIntel with:
      - tld: label after the final dot (None without a dot)
      - ip: first resolved address, None if DNS failed
      - tls_age_days / tls_issuer: from the leaf certificate on port 443,
        None if no TLS endpoint answered
      - domain_age_days: None unless the WHOIS lookup is enabled
    """
    now = datetime.now(timezone.utc)
    intel = HostIntel(domain=host, tld=_top_level_label(host))

    intel.ip = _resolve_ip(host)

    der_cert = _fetch_certificate(host)
    if der_cert:
        try:
            intel.tls_age_days, intel.tls_issuer = _certificate_facts(der_cert, now)
        except ValueError as e:
            logger.debug("Certificate parse error for %s: %s", host, e)

    if whois_enabled:
        intel.domain_age_days = _domain_age_days(host, now)

    intel.fetched_at = datetime.now(timezone.utc)
    logger.info("Collected host intel for %s: ip=%s tls_age_days=%s",
                host, intel.ip, intel.tls_age_days)
    return intel
