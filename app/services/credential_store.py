"""Read access to per-branch integration credentials."""

import hashlib
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.integration_credential import IntegrationCredential


async def get_active_credential(db: AsyncSession, tenant_id: str) -> Optional[IntegrationCredential]:
    """Most recently updated active credential for the tenant, or None."""
    result = await db.execute(
        select(IntegrationCredential)
        .where(IntegrationCredential.tenant_id == tenant_id, IntegrationCredential.is_active.is_(True))
        .order_by(IntegrationCredential.updated_at.desc(), IntegrationCredential.id.desc())
        .limit(1)
    )
    return result.scalars().first()


def credential_fingerprint(credential: IntegrationCredential) -> str:
    raw = "|".join([credential.base_url or "", credential.app_key or "", credential.app_secret or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
