"""
Organization service.
Read-only access to organizations, memberships and widget configuration.
"""
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from ..models import Organization, OrgMember, WidgetConfig
from ..widget import OrganizationProfile, WidgetConfigRecord

organizations = Organization.__table__
org_members = OrgMember.__table__
widget_configs = WidgetConfig.__table__


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


class OrganizationStore:
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def get_member_org_id(self, user_id: str) -> Optional[str]:
        """First organization the user belongs to, or None."""
        async with self.engine.connect() as conn:
            org_id = (
                await conn.execute(
                    select(org_members.c.org_id)
                    .where(org_members.c.user_id == user_id)
                    .limit(1)
                )
            ).scalar_one_or_none()
        return str(org_id) if org_id else None

    async def resolve_organization(self, identifier: str) -> Optional[OrganizationProfile]:
        """Look up an organization by UUID id or by slug."""
        identifier = identifier.strip()
        if not identifier:
            return None

        column = organizations.c.id if is_uuid(identifier) else organizations.c.slug
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    select(
                        organizations.c.id,
                        organizations.c.slug,
                        organizations.c.name,
                        organizations.c.plan,
                        organizations.c.settings,
                    )
                    .where(column == identifier)
                    .limit(1)
                )
            ).first()

        if not row:
            return None
        return OrganizationProfile(
            id=str(row.id),
            slug=row.slug,
            name=row.name,
            plan=row.plan,
            settings=row._mapping["settings"] or {},
        )

    async def get_widget_config(self, org_id: str) -> Optional[WidgetConfigRecord]:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(select(widget_configs).where(widget_configs.c.org_id == org_id))
            ).first()

        if not row:
            return None
        data = dict(row._mapping)
        data["org_id"] = str(data["org_id"])
        return WidgetConfigRecord(**data)
