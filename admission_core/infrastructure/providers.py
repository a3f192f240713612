"""Reference-data providers: fee schedules and per-class admission requirements"""

from decimal import Decimal
from typing import List, Protocol, Set

from sqlalchemy import select

from admission_core.domain.models import FeeEntity
from admission_core.infrastructure.database.models import ClassPolicy, DocumentRequirement, FeeScheduleEntry
from admission_core.infrastructure.database.session import TenantContext


class FeeScheduleProvider(Protocol):
    async def get_fee_schedule(self, ctx: TenantContext, session_id: str, class_section_id: str) -> List[FeeEntity]:
        ...


class DocumentRequirementProvider(Protocol):
    async def get_mandatory_documents(self, ctx: TenantContext, class_id: str) -> Set[str]:
        ...


class EntranceTestPolicyProvider(Protocol):
    async def is_test_required(self, ctx: TenantContext, class_id: str) -> bool:
        ...


class RequirementProvider(DocumentRequirementProvider, EntranceTestPolicyProvider, Protocol):
    """Mandatory documents and entrance-test policy for a class"""


class DatabaseFeeScheduleProvider:
    """Reads the tenant's fee schedule table"""

    async def _entries(self, ctx: TenantContext, session_id: str, key: str) -> List[FeeScheduleEntry]:
        result = await ctx.session.execute(
            select(FeeScheduleEntry)
            .where(
                FeeScheduleEntry.tenant_id == ctx.tenant_id,
                FeeScheduleEntry.session_id == session_id,
                FeeScheduleEntry.class_section_id == key,
            )
            .order_by(FeeScheduleEntry.position, FeeScheduleEntry.id)
        )
        return list(result.scalars().all())

    async def get_fee_schedule(self, ctx: TenantContext, session_id: str, class_section_id: str) -> List[FeeEntity]:
        """
        Ordered fee entities for a session and class-section.

        A section without its own schedule uses the class-level one
        ("5-A" falls back to "5"). No schedule at all means fee-exempt.
        """
        entries = await self._entries(ctx, session_id, class_section_id)
        if not entries and "-" in class_section_id:
            class_id = class_section_id.rsplit("-", 1)[0]
            entries = await self._entries(ctx, session_id, class_id)

        return [
            FeeEntity(
                fee_type=entry.fee_type,
                group_id=entry.group_id,
                name=entry.name,
                base_amount=Decimal(entry.base_amount),
                tax_percent=Decimal(entry.tax_percent),
            )
            for entry in entries
        ]


class DatabaseRequirementProvider:
    """Reads document requirements and entrance-test policy per class"""

    async def get_mandatory_documents(self, ctx: TenantContext, class_id: str) -> Set[str]:
        result = await ctx.session.execute(
            select(DocumentRequirement.document_type).where(
                DocumentRequirement.tenant_id == ctx.tenant_id,
                DocumentRequirement.class_id == class_id,
                DocumentRequirement.mandatory.is_(True),
            )
        )
        return set(result.scalars().all())

    async def is_test_required(self, ctx: TenantContext, class_id: str) -> bool:
        result = await ctx.session.execute(
            select(ClassPolicy.entrance_test_required).where(
                ClassPolicy.tenant_id == ctx.tenant_id,
                ClassPolicy.class_id == class_id,
            )
        )
        required = result.scalar_one_or_none()
        return bool(required)
