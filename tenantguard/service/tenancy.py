from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import BaseModel

from tenantguard.logging import get_logger, log_security_incident
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import NotFoundError, TenantIsolationViolation
from tenantguard.storage.common import RecordStore, normalize_id

logger = get_logger(__name__)

TENANT_KEYS = frozenset({"tenant_id", "company_id"})

# Route prefix -> table owning the numeric id that follows it.
DEFAULT_RESOURCE_TABLES: Dict[str, str] = {
    "/api/clientes": "clientes",
    "/api/produtos": "produtos",
    "/api/vendas": "vendas",
    "/api/financeiro": "transacoes_financeiras",
    "/api/estoque": "produtos",
}

_MAX_SCAN_DEPTH = 64


@dataclass(frozen=True)
class TenantContext:
    """Tenant pinned for one request; derived only from verified claims."""

    tenant_id: str
    principal_id: Optional[str] = None


class TenantIsolationEnforcer:
    """Request-boundary checks that keep every request inside one tenant.

    The pinned tenant always comes from the verified principal's claim. Any
    tenant reference supplied by the client (header, query, body, resource id)
    is only compared against it, and responses are scanned before leaving.
    """

    def __init__(
        self,
        records: RecordStore,
        audit: AuditSink,
        *,
        resource_tables: Optional[Mapping[str, str]] = None,
        api_prefix: str = "",
    ) -> None:
        self.records = records
        self.audit = audit
        tables = DEFAULT_RESOURCE_TABLES if resource_tables is None else resource_tables
        self._routes: Tuple[Tuple[re.Pattern[str], str], ...] = tuple(
            (re.compile(rf"^{re.escape(api_prefix + prefix.rstrip('/'))}/(\d+)(?:/|$)"), table)
            for prefix, table in tables.items()
        )

    def _violation(
        self, event: str, ctx_tenant: str, offending: Any, **context: Any
    ) -> TenantIsolationViolation:
        log_security_incident(
            event, logger, tenant_id=ctx_tenant, offending_tenant_id=normalize_id(offending), **context
        )
        self.audit.log_event(
            event,
            {"tenant_id": ctx_tenant, "offending_tenant_id": normalize_id(offending), **context},
        )
        return TenantIsolationViolation(
            tenant_id=ctx_tenant, offending_tenant_id=normalize_id(offending)
        )

    def pin(
        self,
        claim_tenant_id: Any,
        header_tenant_id: Optional[Any] = None,
        *,
        principal_id: Optional[str] = None,
    ) -> TenantContext:
        """Fix the request's tenant to the verified claim.

        ``header_tenant_id`` (X-Tenant-ID) is a hint only: when present it must
        equal the claim, otherwise the request is refused.
        """
        tenant = normalize_id(claim_tenant_id)
        if not tenant:
            raise TenantIsolationViolation()
        hint = normalize_id(header_tenant_id)
        if hint is not None and hint.strip() != tenant:
            raise self._violation(
                "tenant_isolation_violation",
                tenant,
                hint,
                source="header",
                user_id=principal_id,
            )
        return TenantContext(tenant_id=tenant, principal_id=principal_id)

    def check_parameters(self, ctx: TenantContext, params: Optional[Mapping[str, Any]]) -> None:
        """Reject query/body fields naming a different tenant."""
        if not params:
            return
        for key in TENANT_KEYS:
            if key not in params:
                continue
            value = params[key]
            values: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                if item in (None, ""):
                    continue
                if normalize_id(item) != ctx.tenant_id:
                    raise self._violation(
                        "tenant_isolation_violation",
                        ctx.tenant_id,
                        item,
                        source="parameter",
                        parameter=key,
                        user_id=ctx.principal_id,
                    )

    def check_body(self, ctx: TenantContext, payload: Any) -> None:
        """Reject a decoded request body naming a different tenant at any depth."""
        if payload is None:
            return
        offending = self._find_foreign_tenant(ctx.tenant_id, payload, 0, skip_blank=True)
        if offending is not None:
            path, value = offending
            raise self._violation(
                "tenant_isolation_violation",
                ctx.tenant_id,
                value,
                source="body",
                field_path=path,
                user_id=ctx.principal_id,
            )

    def resolve_resource(self, path: str) -> Optional[Tuple[str, str]]:
        for pattern, table in self._routes:
            match = pattern.match(path)
            if match:
                return table, match.group(1)
        return None

    def verify_resource(self, ctx: TenantContext, path: str) -> None:
        """Ensure a tenant-scoped id in ``path`` belongs to the pinned tenant."""
        resolved = self.resolve_resource(path)
        if resolved is None:
            return
        table, resource_id = resolved
        row = self.records.table(table).where(id=resource_id).first()
        if row is None:
            raise NotFoundError("resource not found")
        owner = row.get("tenant_id", row.get("company_id"))
        if normalize_id(owner) != ctx.tenant_id:
            raise self._violation(
                "tenant_isolation_violation",
                ctx.tenant_id,
                owner,
                source="resource",
                table=table,
                resource_id=resource_id,
                user_id=ctx.principal_id,
            )

    def enforce_request(
        self,
        claim_tenant_id: Any,
        *,
        header_tenant_id: Optional[Any] = None,
        path: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        principal_id: Optional[str] = None,
    ) -> TenantContext:
        ctx = self.pin(claim_tenant_id, header_tenant_id, principal_id=principal_id)
        self.check_parameters(ctx, params)
        self.check_body(ctx, body)
        if path:
            self.verify_resource(ctx, path)
        return ctx

    def scan_response(self, ctx: TenantContext, payload: Any) -> None:
        """Fail closed if any nested tenant field differs from the pinned tenant.

        ``None`` values mark shared rows and are allowed. The caller must drop
        the whole payload on violation; nothing is redacted in place.
        """
        offending = self._find_foreign_tenant(ctx.tenant_id, payload, 0)
        if offending is not None:
            path, value = offending
            raise self._leak(ctx, value, path)

    def scan_rendered_response(self, ctx: TenantContext, body: Optional[bytes]) -> None:
        """Scan an already rendered response body, whatever its media type.

        ``None`` means the body is streamed and cannot be inspected before it
        is sent, and a body that is not JSON cannot be proven clean. Both are
        refused. An empty body passes.
        """
        if body is None:
            raise self._leak(ctx, "<unscannable>", "$", reason="streamed_body")
        if not body:
            return
        try:
            payload = json.loads(body)
        except ValueError:
            raise self._leak(ctx, "<unscannable>", "$", reason="undecodable_body") from None
        self.scan_response(ctx, payload)

    def _leak(
        self, ctx: TenantContext, value: Any, path: str, **context: Any
    ) -> TenantIsolationViolation:
        return self._violation(
            "tenant_data_leak",
            ctx.tenant_id,
            value,
            source="response",
            field_path=path,
            user_id=ctx.principal_id,
            **context,
        )

    def _find_foreign_tenant(
        self,
        tenant_id: str,
        payload: Any,
        depth: int,
        path: str = "$",
        *,
        skip_blank: bool = False,
    ) -> Optional[Tuple[str, Any]]:
        if depth > _MAX_SCAN_DEPTH:
            # too deep to prove clean
            return path, "<unscannable>"
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        if isinstance(payload, Mapping):
            for key, value in payload.items():
                child = f"{path}.{key}"
                if key in TENANT_KEYS:
                    values = value if isinstance(value, (list, tuple)) else [value]
                    for item in values:
                        if item is None or isinstance(item, Mapping):
                            continue
                        if skip_blank and item == "":
                            continue
                        if normalize_id(item) != tenant_id:
                            return child, item
                found = self._find_foreign_tenant(
                    tenant_id, value, depth + 1, child, skip_blank=skip_blank
                )
                if found:
                    return found
        elif isinstance(payload, (list, tuple, set, frozenset)):
            for index, item in enumerate(payload):
                found = self._find_foreign_tenant(
                    tenant_id, item, depth + 1, f"{path}[{index}]", skip_blank=skip_blank
                )
                if found:
                    return found
        return None
