"""WireGuard peer material and the client for the external VPN provisioner."""
from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
from typing import Iterable, Optional, Tuple

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .errors import UpstreamUnavailable, ValidationError

logger = logging.getLogger("onboard.vpn")

DEFAULT_PROVISIONER_URL = "http://wg-provisioner:8081"
DEFAULT_VPN_NETWORK = "10.66.0.0/24"
DEFAULT_TIMEOUT = 10.0
_WIREGUARD_KEY_BYTES = 32


def generate_peer_keypair() -> Tuple[str, str]:
    """Return a new ``(private_key, public_key)`` pair in WireGuard's base64 form."""

    private_key = X25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return (
        base64.b64encode(private_raw).decode("ascii"),
        base64.b64encode(public_raw).decode("ascii"),
    )


def normalise_public_key(value: str) -> str:
    cleaned = value.strip()
    try:
        raw = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("VPN public key must be base64 encoded") from exc
    if len(raw) != _WIREGUARD_KEY_BYTES:
        raise ValidationError("VPN public key must decode to 32 bytes")
    return base64.b64encode(raw).decode("ascii")


def allocate_address(network: str, taken: Iterable[str]) -> str:
    """Return the first free ``/32`` in ``network``; the first host is the server."""

    pool = ipaddress.ip_network(network, strict=False)
    used = set()
    for address in taken:
        try:
            used.add(ipaddress.ip_interface(address).ip)
        except ValueError:
            continue

    hosts = pool.hosts()
    next(hosts, None)
    for candidate in hosts:
        if candidate not in used:
            return f"{candidate}/{pool.max_prefixlen}"
    raise ValidationError(f"VPN address pool {pool} is exhausted")


class VpnProvisionerClient:
    """Requests peer configuration text from the provisioner's ``/issue`` endpoint."""

    def __init__(
        self,
        base_url: str = DEFAULT_PROVISIONER_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    def issue(self) -> str:
        """Return the provisioner's configuration text unchanged."""

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(f"{self._base_url}/issue")
        except httpx.HTTPError as exc:
            logger.warning("VPN provisioner at %s is unreachable: %s", self._base_url, exc)
            raise UpstreamUnavailable(f"VPN provisioner is unreachable: {exc}") from exc

        if not response.is_success:
            raise UpstreamUnavailable(
                f"VPN provisioner responded with {response.status_code}",
                detail=response.text,
                status_code=response.status_code,
            )
        return response.text


__all__ = [
    "DEFAULT_PROVISIONER_URL",
    "DEFAULT_VPN_NETWORK",
    "VpnProvisionerClient",
    "allocate_address",
    "generate_peer_keypair",
    "normalise_public_key",
]
