"""Fee calculation engine - schedule lookup plus discount resolution"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from admission_core.domain.fees import build_breakdown
from admission_core.domain.models import Application, DiscountRule, DiscountSource, FeeBreakdown
from admission_core.infrastructure.database.repositories import ApplicationRepository, DiscountRuleRepository
from admission_core.infrastructure.database.session import TenantContext
from admission_core.infrastructure.observability.metrics import fee_total_histogram, rejected_code_counter
from admission_core.infrastructure.providers import DatabaseFeeScheduleProvider, FeeScheduleProvider

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeeCalculationEngine:
    """Computes fee breakdowns for applications"""

    def __init__(
        self,
        schedules: Optional[FeeScheduleProvider] = None,
        applications: Optional[ApplicationRepository] = None,
        discounts: Optional[DiscountRuleRepository] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.schedules = schedules or DatabaseFeeScheduleProvider()
        self.applications = applications or ApplicationRepository()
        self.discounts = discounts or DiscountRuleRepository()
        self.clock = clock

    async def calculate(
        self,
        ctx: TenantContext,
        session_id: str,
        class_section_id: str,
        student_type_id: Optional[str],
        application_number: str,
    ) -> FeeBreakdown:
        """
        Price the (session, class/section) schedule for one application.

        Flow:
        1. Load the ordered fee schedule
        2. Resolve sibling, referral, promo-code and staff discounts
        3. Price every line (tax on base, additive discounts capped at base)
        4. Return line items and totals

        Raises:
            NotFoundError: Application does not exist in this tenant
        """
        application = await self.applications.get_by_number(ctx, application_number)
        schedule = await self.schedules.get_fee_schedule(ctx, session_id, class_section_id)
        rules, rejected = await self.resolve_discounts(ctx, application, student_type_id)

        breakdown = build_breakdown(
            application_number=application_number,
            session_id=session_id,
            class_section_id=class_section_id,
            schedule=schedule,
            rules=rules,
            rejected_codes=rejected,
        )
        fee_total_histogram.observe(float(breakdown.total))
        return breakdown

    async def calculate_for(self, ctx: TenantContext, application: Application) -> FeeBreakdown:
        return await self.calculate(
            ctx,
            application.session_id,
            application.class_section_id,
            application.student_type_id,
            application.application_number,
        )

    async def resolve_discounts(
        self, ctx: TenantContext, application: Application, student_type_id: Optional[str]
    ) -> Tuple[List[DiscountRule], Tuple[str, ...]]:
        """Collect applicable rules; invalid codes are dropped and reported, not raised"""
        rules: List[DiscountRule] = []
        rejected: List[str] = []

        if await self.applications.has_active_sibling(ctx, application):
            rules.extend(await self.discounts.sibling_rules(ctx))

        now = self.clock()
        for source, code in (
            (DiscountSource.REFERRAL, application.referral_code),
            (DiscountSource.PROMO_CODE, application.promo_code),
        ):
            if not code:
                continue
            code_rules = await self.discounts.code_rules(ctx, source, code, now)
            if code_rules:
                rules.extend(code_rules)
            else:
                rejected.append(code)
                rejected_code_counter.labels(source=source.value).inc()
                logger.warning(
                    "Discount code ignored",
                    extra={
                        "tenant_id": ctx.tenant_id,
                        "application_number": application.application_number,
                        "source": source.value,
                        "code": code,
                    },
                )

        # Unknown student types simply have no staff rule
        rules.extend(await self.discounts.staff_rules(ctx, student_type_id))
        return rules, tuple(rejected)
