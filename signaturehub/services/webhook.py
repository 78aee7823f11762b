import ipaddress
import socket
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import httpx
from loguru import logger

from signaturehub.core.config import settings
from signaturehub.db.schema import SignatureRequest
from signaturehub.utils.dates import isoformat_z, utc_now


BLOCKED_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}
BLOCKED_SUFFIXES = (".local", ".internal", ".localhost")
BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
]


class WebhookEvent:
    COMPLETED = "signature.completed"
    EXPIRED = "signature.expired"
    CANCELLED = "signature.cancelled"
    DECLINED = "signature.declined"


def parse_ip_literal(host: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """
    Returns the address a host string denotes, or None for a DNS name.

    Besides canonical forms this accepts the shorthand IPv4 spellings the
    system resolver understands ('127.1', '2130706433', '0x7f000001').
    IPv4-mapped IPv6 addresses are unwrapped to their IPv4 form.
    """
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        try:
            address = ipaddress.IPv4Address(socket.inet_aton(host))
        except (OSError, ValueError, UnicodeError):
            return None

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        return address.ipv4_mapped
    return address


def is_valid_callback_url(url: Optional[str]) -> bool:
    """
    SSRF allowlist. Only http(s) URLs whose host is neither loopback, a
    private/link-local IPv4 range, nor an internal-looking name.
    """
    if not url:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https"):
        return False

    host = (parsed.hostname or "").lower().rstrip(".")
    if not host or host in BLOCKED_HOSTS:
        return False
    if host.endswith(BLOCKED_SUFFIXES) or host in ("local", "internal"):
        return False

    address = parse_ip_literal(host)
    if address is None:
        return True

    if address.is_loopback or address.is_unspecified:
        return False
    return not any(address in network for network in BLOCKED_NETWORKS)


def build_payload(event: str, request: SignatureRequest, **extra: Any) -> Dict[str, Any]:
    payload = {
        "event": event,
        "requestId": str(request.id),
        "referenceCode": request.reference_code,
        "signerName": request.signer_name,
        "timestamp": isoformat_z(utc_now()),
    }
    if request.external_ref:
        payload["externalRef"] = request.external_ref
    if request.jurisdiction:
        payload["jurisdiction"] = request.jurisdiction
    if request.package_id:
        payload["packageId"] = str(request.package_id)
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


def send_webhook(url: Optional[str], event: str, payload: Dict[str, Any]) -> bool:
    """
    One POST, no retries. Every failure is logged and reported as False.
    """
    if not url:
        return False

    if not is_valid_callback_url(url):
        logger.warning(f"Webhook blocked by URL policy for event {event}: {url}")
        return False

    try:
        response = httpx.post(
            url,
            json=payload,
            headers={"X-Signature-Event": event},
            timeout=settings.webhook_timeout_seconds,
        )
    except Exception as e:
        # Transport errors as well as URLs httpx refuses to encode (bad IDNA labels)
        logger.error(f"Webhook {event} for request {payload.get('requestId')} failed: {e}")
        return False

    if response.is_success:
        logger.info(f"Webhook {event} delivered for request {payload.get('requestId')}")
        return True

    logger.error(
        f"Webhook {event} for request {payload.get('requestId')} returned {response.status_code}")
    return False


def notify_request_event(request: SignatureRequest, event: str, **extra: Any) -> bool:
    if not request.callback_url:
        return False
    return send_webhook(request.callback_url, event, build_payload(event, request, **extra))
