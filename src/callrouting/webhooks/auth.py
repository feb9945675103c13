"""
Webhook authentication.

Two strategies behind one interface, selected by route class:

- BearerTokenAuthenticator (call control): the tenant is implied by the
  request content (dialed DID or extension); the presented token is then
  compared against that tenant's stored credential.
- SignatureAuthenticator (asynchronous events): HMAC-SHA256 over the raw
  body with the process-wide secret, optional timestamp window and source
  allowlist. CDR deliveries may instead carry the platform domain uuid.

Failures are logged with path and source address; credentials never are.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from callrouting.routing.models import ExtensionType
from callrouting.routing.numbers import normalize_number
from callrouting.shared.exceptions import ConfigurationError, StaleRequest, Unauthorized
from callrouting.shared.logging import get_logger
from callrouting.webhooks.config import WebhookConfig

logger = get_logger(__name__)

_CALLER_TYPES = (ExtensionType.USER, ExtensionType.AI_ASSISTANT)


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-independent view of one inbound delivery."""

    path: str
    client_ip: str | None
    headers: Mapping[str, str]
    body: bytes = b""
    fields: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        path: str,
        client_ip: str | None,
        headers: Mapping[str, str],
        body: bytes = b"",
        fields: Mapping[str, Any] | None = None,
    ) -> "WebhookRequest":
        return cls(
            path=path,
            client_ip=client_ip,
            headers={k.lower(): v for k, v in headers.items()},
            body=body,
            fields=dict(fields or {}),
        )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class AuthResult:
    organization_id: int | None
    scheme: str


class TenantLookup(Protocol):
    """Cross-tenant lookups the authenticators need."""

    async def tenant_for_did(self, phone_number: str) -> int | None: ...

    async def tenants_for_extension(
        self,
        extension_number: str,
        types: Sequence[ExtensionType] | None = None,
    ) -> list[int]: ...

    async def tenant_for_domain(self, domain_uuid: str) -> int | None: ...

    async def bearer_token(self, organization_id: int) -> str | None: ...


class WebhookAuthenticator(Protocol):
    async def authenticate(self, request: WebhookRequest) -> AuthResult: ...


def _reject(request: WebhookRequest, scheme: str, reason: str, message: str = "Authentication failed") -> Unauthorized:
    logger.warning(
        "Webhook authentication failed",
        extra={
            "path": request.path,
            "client_ip": request.client_ip,
            "scheme": scheme,
            "reason": reason,
        },
    )
    return Unauthorized(message, details={"reason": reason})


def domain_uuid_from(fields: Mapping[str, Any]) -> str | None:
    """Platform domain identifier carried by CDR payloads (owner.domain.uuid)."""
    owner = fields.get("owner")
    if isinstance(owner, Mapping):
        domain = owner.get("domain")
        if isinstance(domain, Mapping) and domain.get("uuid"):
            return str(domain["uuid"])
    value = fields.get("domain_uuid")
    return str(value) if value else None


async def did_tenant(directory: TenantLookup, number: str | None) -> int | None:
    """Tenant of a dialed DID, tolerating a missing leading '+'."""
    normalized = normalize_number(number)
    if not normalized:
        return None
    organization_id = await directory.tenant_for_did(normalized)
    if organization_id is None and not normalized.startswith("+"):
        organization_id = await directory.tenant_for_did(f"+{normalized}")
    return organization_id


class BearerTokenAuthenticator:
    """Per-tenant bearer token for real-time call-control webhooks."""

    scheme = "bearer"

    def __init__(self, directory: TenantLookup) -> None:
        self._directory = directory

    @staticmethod
    def _token(request: WebhookRequest) -> str | None:
        header = request.header("authorization") or ""
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def _candidate_tenants(self, caller: str, dialed: str) -> list[int]:
        candidates: list[int] = []

        organization_id = await did_tenant(self._directory, dialed)
        if organization_id is not None:
            candidates.append(organization_id)

        if caller:
            candidates.extend(await self._directory.tenants_for_extension(caller, _CALLER_TYPES))
        if dialed:
            candidates.extend(await self._directory.tenants_for_extension(dialed))

        unique: list[int] = []
        for organization_id in candidates:
            if organization_id not in unique:
                unique.append(organization_id)
        return unique

    async def authenticate(self, request: WebhookRequest) -> AuthResult:
        token = self._token(request)
        if token is None:
            raise _reject(request, self.scheme, "missing_token")

        caller = normalize_number(str(request.fields.get("from") or ""))
        dialed = normalize_number(str(request.fields.get("to") or ""))
        candidates = await self._candidate_tenants(caller, dialed)
        if not candidates:
            raise _reject(request, self.scheme, "tenant_not_resolved")

        for organization_id in candidates:
            stored = await self._directory.bearer_token(organization_id)
            if stored and hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8")):
                return AuthResult(organization_id=organization_id, scheme=self.scheme)

        raise _reject(request, self.scheme, "invalid_token")


class SignatureAuthenticator:
    """HMAC-SHA256 signature for asynchronous platform events."""

    scheme = "signature"

    def __init__(
        self,
        config: WebhookConfig,
        directory: TenantLookup,
        allow_domain_uuid: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize authenticator.

        Args:
            config: Secret, headers, tolerance and allowlist.
            directory: Used to resolve the tenant from payload content.
            allow_domain_uuid: Accept an unsigned delivery that carries a
                known platform domain uuid (CDR route only).
            clock: Epoch-seconds source for the timestamp window.
        """
        self._config = config
        self._directory = directory
        self._allow_domain_uuid = allow_domain_uuid
        self._clock = clock

    @staticmethod
    def sign(secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def _check_source(self, request: WebhookRequest) -> None:
        networks = self._config.ip_networks
        if not networks:
            return
        try:
            address = ipaddress.ip_address(request.client_ip or "")
        except ValueError:
            raise _reject(request, self.scheme, "source_not_allowed")
        if not any(address in network for network in networks):
            raise _reject(request, self.scheme, "source_not_allowed")

    def _check_timestamp(self, request: WebhookRequest) -> None:
        if not self._config.verify_timestamp:
            return
        raw = request.header(self._config.timestamp_header)
        if not raw:
            raise _reject(request, self.scheme, "missing_timestamp")
        try:
            timestamp = int(raw.strip())
        except ValueError:
            raise _reject(request, self.scheme, "invalid_timestamp")

        skew = abs(self._clock() - timestamp)
        if skew > self._config.timestamp_tolerance_seconds:
            logger.warning(
                "Webhook timestamp outside tolerance",
                extra={
                    "path": request.path,
                    "client_ip": request.client_ip,
                    "skew_seconds": int(skew),
                    "tolerance_seconds": self._config.timestamp_tolerance_seconds,
                },
            )
            raise StaleRequest("Request timestamp outside tolerance window")

    def _valid_signature(self, presented: str, body: bytes) -> bool:
        presented = presented.strip()
        if presented.lower().startswith("sha256="):
            presented = presented[len("sha256=") :]
        expected = self.sign(self._config.hmac_secret, body)
        return hmac.compare_digest(expected, presented.lower())

    async def _payload_tenant(self, request: WebhookRequest) -> int | None:
        domain_uuid = domain_uuid_from(request.fields)
        if domain_uuid:
            organization_id = await self._directory.tenant_for_domain(domain_uuid)
            if organization_id is not None:
                return organization_id
        return await did_tenant(self._directory, request.fields.get("to"))

    async def authenticate(self, request: WebhookRequest) -> AuthResult:
        self._check_source(request)

        presented = request.header(self._config.signature_header)

        if not presented and self._allow_domain_uuid:
            domain_uuid = domain_uuid_from(request.fields)
            if domain_uuid:
                organization_id = await self._directory.tenant_for_domain(domain_uuid)
                if organization_id is None:
                    raise _reject(request, "domain_uuid", "unknown_domain")
                return AuthResult(organization_id=organization_id, scheme="domain_uuid")

        if not self._config.verify_signature:
            return AuthResult(organization_id=await self._payload_tenant(request), scheme="unverified")

        if not self._config.hmac_secret:
            logger.error("Webhook signature secret not configured", extra={"path": request.path})
            raise ConfigurationError("Webhook signature secret not configured")

        self._check_timestamp(request)

        if not presented:
            raise _reject(request, self.scheme, "missing_signature")
        if not self._valid_signature(presented, request.body):
            raise _reject(request, self.scheme, "invalid_signature")

        return AuthResult(organization_id=await self._payload_tenant(request), scheme=self.scheme)


__all__ = [
    "AuthResult",
    "BearerTokenAuthenticator",
    "SignatureAuthenticator",
    "TenantLookup",
    "WebhookAuthenticator",
    "WebhookRequest",
    "did_tenant",
    "domain_uuid_from",
]
