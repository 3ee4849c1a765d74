"""
Tenant resolution from API keys.

Credentials come from environment configuration loaded once at startup:

- ``RAG_TENANT_<ID>=name:namespace:apiKey[:tier]``
- ``RAG_API_KEY``: master tenant on ``RAG_DEFAULT_NAMESPACE``
- ``RAG_DEMO_API_KEY``: demo tenant on the default partition
"""

from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from loguru import logger

from ragserve.errors import Forbidden, Unauthenticated

TENANT_ENV_PREFIX = "RAG_TENANT_"
DEFAULT_TIER = "free"


@dataclass(frozen=True)
class Tenant:
    id: str
    name: str
    namespace: str
    tier: str = DEFAULT_TIER


def _key_prefix(api_key: str) -> str:
    return api_key[:6] + "..."


def load_tenants(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Tenant]:
    """Build the api-key -> Tenant map. Later sources win on key collisions."""
    env = os.environ if environ is None else environ
    tenants: Dict[str, Tenant] = {}

    demo_key = env.get("RAG_DEMO_API_KEY", "").strip()
    if demo_key:
        tenants[demo_key] = Tenant(id="demo", name="Demo", namespace="")

    for key in sorted(env):
        if not key.startswith(TENANT_ENV_PREFIX):
            continue
        value = env[key]
        tenant_id = key[len(TENANT_ENV_PREFIX):].lower()
        parts = value.split(":") if value else []
        name = parts[0].strip() if parts else ""
        namespace = parts[1].strip() if len(parts) > 1 else ""
        api_key = parts[2].strip() if len(parts) > 2 else ""
        tier = parts[3].strip().lower() if len(parts) > 3 and parts[3].strip() else DEFAULT_TIER
        if not tenant_id or not name or not api_key:
            logger.warning(f"Skipping malformed tenant entry {key} (expected name:namespace:apiKey[:tier])")
            continue
        tenants[api_key] = Tenant(id=tenant_id, name=name, namespace=namespace or tenant_id, tier=tier)

    master_key = env.get("RAG_API_KEY", "").strip()
    if master_key:
        tenants[master_key] = Tenant(
            id="master",
            name="Master",
            namespace=env.get("RAG_DEFAULT_NAMESPACE", ""),
            tier=env.get("RAG_MASTER_TIER", DEFAULT_TIER).strip().lower() or DEFAULT_TIER,
        )

    logger.info(f"Loaded tenant configurations: count={len(tenants)} ids={sorted(t.id for t in tenants.values())}")
    return tenants


def extract_api_key(
    authorization: Optional[str] = None,
    x_api_key: Optional[str] = None,
    query_param: Optional[str] = None,
) -> Optional[str]:
    """First present credential wins: bearer token, then X-API-Key, then ?apiKey=."""
    if authorization:
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    if query_param and query_param.strip():
        return query_param.strip()
    return None


class TenantResolver:
    """Maps a credential to a Tenant or raises Unauthenticated / Forbidden."""

    def __init__(self, tenants: Dict[str, Tenant], default_namespace: str = "", required: bool = True):
        self._tenants = dict(tenants)
        self.default_namespace = default_namespace
        self.required = required

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        default_namespace: str = "",
        required: bool = True,
    ) -> "TenantResolver":
        return cls(load_tenants(environ), default_namespace=default_namespace, required=required)

    def demo_tenant(self) -> Tenant:
        return Tenant(id="demo", name="Demo", namespace=self.default_namespace)

    def _lookup(self, api_key: str) -> Optional[Tenant]:
        found = None
        candidate = api_key.encode("utf-8")
        for known, tenant in self._tenants.items():
            if hmac.compare_digest(known.encode("utf-8"), candidate):
                found = tenant
        return found

    def resolve(
        self,
        api_key: Optional[str],
        required: Optional[bool] = None,
        request_id: Optional[str] = None,
    ) -> Tenant:
        must_auth = self.required if required is None else required
        if not api_key:
            if not must_auth:
                return self.demo_tenant()
            logger.warning(f"[{request_id}] Missing API key")
            raise Unauthenticated(
                "API key required. Provide it via Authorization: Bearer, X-API-Key header, or apiKey query parameter"
            )

        tenant = self._lookup(api_key)
        if tenant is None:
            logger.warning(f"[{request_id}] Invalid API key: {_key_prefix(api_key)}")
            raise Forbidden()

        logger.debug(f"[{request_id}] API key authenticated: tenant={tenant.id}")
        return tenant

    def tenants(self) -> Dict[str, Tenant]:
        """Tenants by id (no credentials)."""
        return {t.id: t for t in self._tenants.values()}

    def __len__(self) -> int:
        return len(self._tenants)
