"""Tenant Resolution and Webhook Authentication.

Binds every intake request to exactly one clinic and verifies that the caller
holds a credential for that binding.

Security Impact:
    - Static sources are pinned to one tenant; a pinned expected tenant id is
      re-checked after every lookup and a mismatch aborts the request as a
      security alert
    - Basic-auth passwords are compared with an equal-length check followed
      by hmac.compare_digest (constant time)
    - Header/bearer secrets are opaque high-entropy tokens and use equality
    - Optional HMAC-SHA256 body signatures are verified in constant time
    - Secrets and credentials never appear in logs or exception messages

Architecture:
    - One authentication policy parameterized by the credential kinds a
      source accepts, instead of per-source copies
    - Tenant lookups go through TenantRepositoryPort and the retry guardrail
"""

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from intake_gateway.domain.guardrails import RetryPolicy, retry_call
from intake_gateway.domain.models import CredentialKind, SourceConfig, Tenant
from intake_gateway.domain.ports import (
    AuthenticationFault,
    PHICipherPort,
    TenantFault,
    TenantNotResolvedError,
    TenantRepositoryPort,
)
from intake_gateway.infrastructure.logging_config import log_security_alert, log_security_event

logger = logging.getLogger(__name__)

HEADER_SECRET_NAMES = (
    "x-webhook-secret",
    "x-api-key",
    "x-heyflow-secret",
    "x-medlink-secret",
    "x-intake-secret",
)
SIGNATURE_HEADER = "x-webhook-signature"
CLINIC_HEADER = "x-clinic-subdomain"
CLINIC_PAYLOAD_KEYS = ("clinic-subdomain", "clinicSubdomain", "clinic_subdomain", "clinic", "subdomain")


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-independent view of one webhook delivery.

    Attributes:
        source: Source named by the caller (query parameter or path), may be empty
        raw_body: Exact request bytes (hashed for idempotency, signed by vendors)
        headers: Request headers with lower-cased names
        request_id: Correlation id
        client_ip: Caller address (stored on the document record)
        user_agent: Caller user agent
    """
    source: str
    raw_body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    request_id: str = ""
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name.lower())
        return value.strip() if isinstance(value, str) else value


def parse_basic_auth(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode an `Authorization: Basic` header into (username, password)."""
    if not authorization or not authorization.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(authorization[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization[7:].strip() or None


class WebhookAuthenticator:
    """Single authentication policy over the credential kinds a source accepts.

    Parameters:
        cipher: PHI cipher used to decrypt per-tenant stored credentials
    """

    def __init__(self, cipher: PHICipherPort):
        self._cipher = cipher

    def authenticate_source(self, request: WebhookRequest, source: SourceConfig) -> Optional[CredentialKind]:
        """Check only the source-level shared secret. Never raises.

        Returns:
            The matching credential kind, or None if the source has no secret
            or the request does not present it
        """
        if source.secret is None:
            return None
        return self._match_secret(request, source, source.secret.get_secret_value())

    def authenticate(
        self,
        request: WebhookRequest,
        source: SourceConfig,
        tenant: Optional[Tenant] = None
    ) -> CredentialKind:
        """Authenticate a request for a source and (optionally) resolved tenant.

        Parameters:
            request: Webhook request
            source: Source binding and accepted credential kinds
            tenant: Resolved tenant, whose stored credentials are also accepted

        Returns:
            CredentialKind: The credential kind that authenticated the request

        Raises:
            AuthenticationFault: If no accepted credential matches
            TenantFault: If neither the source nor the tenant has any credential configured
        """
        configured = False

        secrets = []
        if source.secret is not None:
            secrets.append(source.secret.get_secret_value())
        if tenant is not None and tenant.webhook_secret:
            secrets.append(self._cipher.decrypt(tenant.webhook_secret))
        if secrets and (source.accepts(CredentialKind.HEADER_SECRET) or source.accepts(CredentialKind.BEARER)):
            configured = True
            for secret in secrets:
                kind = self._match_secret(request, source, secret)
                if kind is not None:
                    return kind

        if source.accepts(CredentialKind.BASIC) and tenant is not None and tenant.inbound_password:
            configured = True
            credentials = parse_basic_auth(request.header("authorization"))
            if credentials is not None and self._check_basic(credentials, source, tenant):
                return CredentialKind.BASIC

        if not configured:
            log_security_alert(
                "No webhook credential configured",
                source=source.name,
                tenant_id=tenant.id if tenant else None,
                code="NO_SECRET_CONFIGURED"
            )
            raise TenantFault(
                f"No webhook credential configured for source '{source.name}'",
                source=source.name,
                code="NO_SECRET_CONFIGURED"
            )

        log_security_event(
            "Rejected webhook credentials",
            source=source.name,
            tenant_id=tenant.id if tenant else None,
            client_ip=request.client_ip,
            presented=self._presented_kinds(request)
        )
        raise AuthenticationFault("Invalid or missing webhook credentials", source=source.name)

    def verify_signature(self, request: WebhookRequest, source: SourceConfig) -> None:
        """Verify the HMAC-SHA256 body signature when the source requires one.

        Raises:
            AuthenticationFault: If the signature is missing or invalid
            TenantFault: If a signature is required but no signing secret is configured
        """
        if not source.require_signature:
            return
        if source.signing_secret is None:
            log_security_alert(
                "Signature required but no signing secret configured",
                source=source.name,
                code="NO_SIGNING_SECRET"
            )
            raise TenantFault(
                "Signature required but no signing secret configured",
                source=source.name,
                code="NO_SIGNING_SECRET"
            )
        presented = request.header(SIGNATURE_HEADER) or ""
        if presented.lower().startswith("sha256="):
            presented = presented[7:]
        expected = hmac.new(
            source.signing_secret.get_secret_value().encode("utf-8"),
            request.raw_body,
            hashlib.sha256
        ).hexdigest()
        if not presented or not hmac.compare_digest(presented.lower().encode(), expected.encode()):
            log_security_event("Rejected webhook signature", source=source.name, client_ip=request.client_ip)
            raise AuthenticationFault("Invalid webhook signature", source=source.name)

    def match_basic_username(self, username: str, tenant: Tenant) -> bool:
        """True when username equals the tenant's stored inbound username."""
        if not tenant.inbound_username:
            return False
        return self._cipher.decrypt(tenant.inbound_username) == username

    def _match_secret(self, request: WebhookRequest, source: SourceConfig, secret: str) -> Optional[CredentialKind]:
        if not secret:
            return None
        if source.accepts(CredentialKind.HEADER_SECRET):
            for name in HEADER_SECRET_NAMES:
                if request.header(name) == secret:
                    return CredentialKind.HEADER_SECRET
        if source.accepts(CredentialKind.BEARER):
            if bearer_token(request.header("authorization")) == secret:
                return CredentialKind.BEARER
        return None

    def _check_basic(self, credentials: Tuple[str, str], source: SourceConfig, tenant: Tenant) -> bool:
        username, password = credentials
        if username not in source.accepted_usernames and not self.match_basic_username(username, tenant):
            return False

        expected = self._cipher.decrypt(tenant.inbound_password or "").encode("utf-8")
        presented = password.encode("utf-8")
        if len(presented) != len(expected):
            return False
        return hmac.compare_digest(presented, expected)

    @staticmethod
    def _presented_kinds(request: WebhookRequest) -> list:
        kinds = [name for name in HEADER_SECRET_NAMES if request.header(name)]
        authorization = request.header("authorization") or ""
        if authorization:
            kinds.append(authorization.split(" ", 1)[0].lower())
        return kinds


class TenantResolver:
    """Resolve the tenant a delivery belongs to.

    Static sources are bound to one subdomain; multi-tenant sources name
    their clinic in the payload, a header, or through the Basic-auth
    username stored on the tenant.

    Parameters:
        tenants: Tenant repository
        authenticator: Used to match Basic-auth usernames to tenants
        retry_policy: Linear backoff for tenant lookups
    """

    def __init__(self, tenants: TenantRepositoryPort, authenticator: WebhookAuthenticator, retry_policy: RetryPolicy):
        self._tenants = tenants
        self._authenticator = authenticator
        self._retry_policy = retry_policy

    def resolve(
        self,
        request: WebhookRequest,
        source: SourceConfig,
        payload: Optional[Dict[str, Any]] = None
    ) -> Tenant:
        """Resolve and verify the tenant for a request.

        Parameters:
            request: Webhook request
            source: Source binding
            payload: Leniently decoded body (None if not a JSON object)

        Returns:
            Tenant: The resolved tenant

        Raises:
            TenantFault: Static binding missing, or expected-id mismatch
            TenantNotResolvedError: Multi-tenant source with no resolvable clinic
            PersistenceFault: Tenant lookups exhausted their retries
        """
        if source.is_multi_tenant:
            tenant = self._resolve_dynamic(request, source, payload or {})
        else:
            tenant = self._lookup(source.tenant_subdomain, source)
            if tenant is None:
                log_security_alert(
                    "Statically bound tenant not found",
                    source=source.name,
                    subdomain=source.tenant_subdomain,
                    code="TENANT_NOT_FOUND"
                )
                raise TenantFault(
                    f"Tenant '{source.tenant_subdomain}' bound to source '{source.name}' does not exist",
                    source=source.name,
                    code="TENANT_NOT_FOUND"
                )

        self.assert_expected_tenant(source, tenant)
        logger.debug(f"Resolved source '{source.name}' to tenant {tenant.id}")
        return tenant

    @staticmethod
    def assert_expected_tenant(source: SourceConfig, tenant: Tenant) -> None:
        """Defense-in-depth check of the resolved tenant against the pinned id.

        Raises:
            TenantFault: If the ids differ
        """
        if source.expected_tenant_id is None or tenant.id == source.expected_tenant_id:
            return
        log_security_alert(
            "Resolved tenant does not match pinned tenant id",
            source=source.name,
            expected_tenant_id=source.expected_tenant_id,
            resolved_tenant_id=tenant.id,
            code="CLINIC_ID_MISMATCH"
        )
        raise TenantFault(
            "Tenant configuration mismatch",
            source=source.name,
            expected_tenant_id=source.expected_tenant_id,
            resolved_tenant_id=tenant.id,
            code="CLINIC_ID_MISMATCH"
        )

    def _lookup(self, subdomain: str, source: SourceConfig) -> Optional[Tenant]:
        return retry_call(
            lambda: self._tenants.get_tenant_by_subdomain(subdomain),
            self._retry_policy,
            operation="tenant_lookup",
            source=source.name
        )

    def _resolve_dynamic(self, request: WebhookRequest, source: SourceConfig, payload: Dict[str, Any]) -> Tenant:
        subdomain = self._clinic_hint(request, payload)
        if subdomain:
            tenant = self._lookup(subdomain, source)
            if tenant is None:
                raise TenantNotResolvedError(f"No tenant with subdomain '{subdomain}'", source=source.name)
            return tenant

        credentials = parse_basic_auth(request.header("authorization"))
        if credentials is not None and source.accepts(CredentialKind.BASIC):
            tenants = retry_call(
                self._tenants.list_tenants,
                self._retry_policy,
                operation="tenant_lookup",
                source=source.name
            )
            matches = [t for t in tenants if self._authenticator.match_basic_username(credentials[0], t)]
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                log_security_alert(
                    "Basic-auth username is shared by several tenants",
                    source=source.name,
                    tenant_ids=[t.id for t in matches],
                    code="AMBIGUOUS_TENANT_CREDENTIAL"
                )
                raise TenantFault(
                    "Ambiguous tenant credential",
                    source=source.name,
                    code="AMBIGUOUS_TENANT_CREDENTIAL"
                )

        raise TenantNotResolvedError("Payload does not identify a clinic", source=source.name)

    @staticmethod
    def _clinic_hint(request: WebhookRequest, payload: Dict[str, Any]) -> Optional[str]:
        containers = [payload]
        if isinstance(payload.get("data"), dict):
            containers.append(payload["data"])
        for container in containers:
            for key in CLINIC_PAYLOAD_KEYS:
                value = container.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip().lower()
        header = request.header(CLINIC_HEADER)
        return header.lower() if header else None
