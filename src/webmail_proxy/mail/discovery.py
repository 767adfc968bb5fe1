"""Mail server discovery from an email address.

Tries, in order:
1. Mozilla autoconfig (``config-v1.1.xml``) on three conventional hosts
2. Microsoft autodiscover (POX) on three conventional hosts
3. A ``mail.<domain>`` guess

Every candidate is independent: a network error, non-2xx status or
unparseable body moves on to the next one. Nothing is retried.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote
from xml.sax.saxutils import escape

import requests

from webmail_proxy.lib.config import mail_config
from webmail_proxy.lib.errors import ValidationError
from webmail_proxy.lib.logger import get_logger, hash_email
from webmail_proxy.lib.utils import email_domain
from webmail_proxy.models.account import SecurityMode, ServerSettings

logger = get_logger(__name__)

AUTODISCOVER_REQUEST = """<?xml version="1.0" encoding="utf-8"?>
<Autodiscover xmlns="http://schemas.microsoft.com/exchange/autodiscover/outlook/requestschema/2006">
  <Request>
    <EMailAddress>{email}</EMailAddress>
    <AcceptableResponseSchema>http://schemas.microsoft.com/exchange/autodiscover/outlook/responseschema/2006a</AcceptableResponseSchema>
  </Request>
</Autodiscover>"""

DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 587


@dataclass
class ServerEndpoint:
    """One discovered server (``secure`` = implicit TLS)."""

    host: str
    port: int
    secure: bool = True
    starttls: bool = False

    @classmethod
    def from_socket_type(cls, host: str, port: int, socket_type: str | None) -> "ServerEndpoint":
        kind = (socket_type or "").strip().upper()
        return cls(host=host, port=port, secure=kind == "SSL", starttls=kind == "STARTTLS")

    def security_mode(self) -> SecurityMode:
        if self.secure:
            return SecurityMode.SSL_TLS
        if self.starttls:
            return SecurityMode.STARTTLS
        return SecurityMode.NONE

    def to_settings(self) -> ServerSettings:
        return ServerSettings(host=self.host, port=self.port, security=self.security_mode())

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "starttls": self.starttls,
        }


@dataclass
class DiscoveredConfig:
    imap: ServerEndpoint
    smtp: ServerEndpoint

    def to_dict(self) -> dict[str, Any]:
        return {"imap": self.imap.to_dict(), "smtp": self.smtp.to_dict()}


@dataclass
class DiscoveryResult:
    """Outcome of a discovery run.

    Attributes:
        found: True if a published configuration was found
        source: "autoconfig", "autodiscover" or "fallback"
        config: Server endpoints (always populated)
    """

    found: bool
    source: str
    config: DiscoveredConfig

    def to_dict(self) -> dict[str, Any]:
        return {"found": self.found, "source": self.source, "config": self.config.to_dict()}


# ============================================================================
# XML parsing
# ============================================================================


def _local(tag: str) -> str:
    """Strip an ElementTree ``{namespace}`` prefix."""
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local(child.tag).lower() == name.lower():
            return (child.text or "").strip() or None
    return None


def _to_port(value: str | None, default: int) -> int:
    try:
        port = int(value) if value else default
    except ValueError:
        return default
    return port if 0 < port < 65536 else default


def parse_autoconfig(xml_text: str | bytes) -> DiscoveredConfig | None:
    """
    Parse a Mozilla ``clientConfig`` document.

    Returns:
        Config when both an IMAP and an SMTP hostname are present, else None

    Raises:
        ET.ParseError: Body is not XML
    """
    root = ET.fromstring(xml_text)

    incoming = None
    outgoing = None
    first_outgoing = None
    for element in root.iter():
        name = _local(element.tag)
        if name == "incomingServer" and incoming is None and element.get("type") == "imap":
            incoming = element
        elif name == "outgoingServer":
            if first_outgoing is None:
                first_outgoing = element
            if outgoing is None and element.get("type") == "smtp":
                outgoing = element
    outgoing = outgoing if outgoing is not None else first_outgoing

    if incoming is None or outgoing is None:
        return None

    imap_host = _child_text(incoming, "hostname")
    smtp_host = _child_text(outgoing, "hostname")
    if not imap_host or not smtp_host:
        return None

    return DiscoveredConfig(
        imap=ServerEndpoint.from_socket_type(
            imap_host,
            _to_port(_child_text(incoming, "port"), DEFAULT_IMAP_PORT),
            _child_text(incoming, "socketType"),
        ),
        smtp=ServerEndpoint.from_socket_type(
            smtp_host,
            _to_port(_child_text(outgoing, "port"), DEFAULT_SMTP_PORT),
            _child_text(outgoing, "socketType"),
        ),
    )


def parse_autodiscover(xml_text: str | bytes) -> tuple[ServerEndpoint | None, ServerEndpoint | None]:
    """
    Parse an Outlook autodiscover response.

    Returns:
        (imap, smtp); either may be None when the response omits it

    Raises:
        ET.ParseError: Body is not XML
    """
    root = ET.fromstring(xml_text)
    found: dict[str, ServerEndpoint] = {}

    for element in root.iter():
        if _local(element.tag) != "Protocol":
            continue
        kind = (_child_text(element, "Type") or "").upper()
        if kind not in ("IMAP", "SMTP") or kind in found:
            continue
        server = _child_text(element, "Server")
        if not server:
            continue
        default_port = DEFAULT_IMAP_PORT if kind == "IMAP" else DEFAULT_SMTP_PORT
        ssl = (_child_text(element, "SSL") or "on").lower()
        found[kind] = ServerEndpoint(
            host=server,
            port=_to_port(_child_text(element, "Port"), default_port),
            secure=ssl == "on",
            starttls=False,
        )

    return found.get("IMAP"), found.get("SMTP")


def fallback_config(domain: str) -> DiscoveredConfig:
    """DEFAULT_IMAP_HOST / DEFAULT_SMTP_HOST if configured, else mail.<domain>."""
    return DiscoveredConfig(
        imap=ServerEndpoint(
            host=mail_config.default_imap_host or f"mail.{domain}",
            port=mail_config.default_imap_port,
            secure=True,
        ),
        smtp=ServerEndpoint(
            host=mail_config.default_smtp_host or f"mail.{domain}",
            port=mail_config.default_smtp_port,
            secure=True,
        ),
    )


# ============================================================================
# Discovery client
# ============================================================================


class MailDiscovery:
    """Resolves IMAP/SMTP settings for an email address."""

    def __init__(self, http: requests.Session | None = None, timeout: float | None = None):
        self._http = http or requests.Session()
        self._timeout = timeout or mail_config.discovery_timeout_seconds

    @staticmethod
    def autoconfig_urls(email: str, domain: str) -> list[str]:
        query = f"emailaddress={quote(email)}"
        return [
            f"https://autoconfig.{domain}/mail/config-v1.1.xml?{query}",
            f"https://autodiscover.{domain}/mail/config-v1.1.xml?{query}",
            f"https://{domain}/.well-known/autoconfig/mail/config-v1.1.xml?{query}",
        ]

    @staticmethod
    def autodiscover_urls(domain: str) -> list[str]:
        return [
            f"https://autoconfig.{domain}/autodiscover/autodiscover.xml",
            f"https://autodiscover.{domain}/autodiscover/autodiscover.xml",
            f"https://{domain}/autodiscover/autodiscover.xml",
        ]

    def _try_autoconfig(self, url: str) -> DiscoveredConfig | None:
        try:
            response = self._http.get(url, timeout=self._timeout)
            if not response.ok:
                logger.debug(f"Autoconfig {url} returned {response.status_code}")
                return None
            return parse_autoconfig(response.content)
        except requests.RequestException as e:
            logger.debug(f"Autoconfig {url} failed: {type(e).__name__}")
        except ET.ParseError:
            logger.debug(f"Autoconfig {url} returned invalid XML")
        return None

    def _try_autodiscover(self, url: str, email: str, domain: str) -> DiscoveredConfig | None:
        try:
            response = self._http.post(
                url,
                data=AUTODISCOVER_REQUEST.format(email=escape(email)).encode("utf-8"),
                headers={"Content-Type": "text/xml", "Accept": "application/xml, text/xml"},
                timeout=self._timeout,
            )
            if not response.ok:
                logger.debug(f"Autodiscover {url} returned {response.status_code}")
                return None
            imap, smtp = parse_autodiscover(response.content)
        except requests.RequestException as e:
            logger.debug(f"Autodiscover {url} failed: {type(e).__name__}")
            return None
        except ET.ParseError:
            logger.debug(f"Autodiscover {url} returned invalid XML")
            return None

        if imap is None and smtp is None:
            return None
        guess = fallback_config(domain)
        return DiscoveredConfig(imap=imap or guess.imap, smtp=smtp or guess.smtp)

    def discover(self, email: str) -> DiscoveryResult:
        """
        Discover server settings for ``email``.

        Raises:
            ValidationError: Address has no domain
        """
        domain = email_domain(email)
        if not domain:
            raise ValidationError("Email address must include a domain")

        for url in self.autoconfig_urls(email, domain):
            config = self._try_autoconfig(url)
            if config:
                logger.info(f"Autoconfig found for user {hash_email(email)} at {url}")
                return DiscoveryResult(found=True, source="autoconfig", config=config)

        for url in self.autodiscover_urls(domain):
            config = self._try_autodiscover(url, email, domain)
            if config:
                logger.info(f"Autodiscover found for user {hash_email(email)} at {url}")
                return DiscoveryResult(found=True, source="autodiscover", config=config)

        logger.info(f"No published mail config for {domain}, using mail.{domain}")
        return DiscoveryResult(found=False, source="fallback", config=fallback_config(domain))
