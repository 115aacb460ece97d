"""
BrandForge Stage Engine
Token Budget Ledger.

Per-organization token accounting:
    - Check budget before a run → reject if the estimate does not fit
    - Record actual usage after the AI call, monthly allowance first,
      then the bonus pool
    - Lazily reset the monthly counter when the cycle has elapsed

All writes to the organization's counters are conditional updates on
the values that were read, retried on conflict, so concurrent runs for
the same organization never lose an update.
"""

import logging
from datetime import datetime, timedelta, timezone

from brandforge.core.exceptions import NotFoundError, ValidationError
from brandforge.models import db
from brandforge.models.organization import (
    PURCHASE_ENABLED_PLANS,
    TOKEN_CYCLE_DAYS,
    Organization,
    TokenUsage,
)

logger = logging.getLogger(__name__)

# Conditional-update retries before giving up on a hot row
MAX_UPDATE_RETRIES = 5


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite stores naive datetimes; coerce to UTC-aware for comparison
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def split_consumption(total: int, monthly_used: int, monthly_limit: int, bonus: int) -> dict:
    """
    Split a consumption over the two pools.

    Monthly headroom is drawn first, the remainder from the bonus pool.
    Anything beyond both is soft overage, charged to the monthly counter
    so the bonus pool never goes negative.

    Returns:
        {"monthly": int, "bonus": int, "overage": int}
    """
    total = max(0, int(total))
    headroom = max(0, monthly_limit - monthly_used)
    monthly = min(total, headroom)
    from_bonus = min(total - monthly, max(0, bonus))
    overage = total - monthly - from_bonus
    return {"monthly": monthly, "bonus": from_bonus, "overage": overage}


class TokenBudgetLedger:
    """Manages the monthly allowance and bonus pool of organizations."""

    def get_organization(self, org_id: int) -> Organization:
        org = db.session.get(Organization, org_id)
        if not org:
            raise NotFoundError(resource="Organization", resource_id=org_id)
        return org

    def check_budget(self, org_id: int, estimated_tokens: int) -> dict:
        """
        Check whether an estimated run fits the remaining budget.

        Returns:
            {"allowed": bool, "reason": str|None, "remaining": int, "plan": str,
             "canPurchaseMore": bool, "suggestUpgrade": bool, "estimatedTokens": int,
             "resetDate": str|None, "daysUntilReset": int}
        """
        org = self.get_organization(org_id)
        self._reset_if_needed(org)

        monthly_remaining = max(0, org.monthly_token_limit - org.monthly_tokens_used)
        remaining = monthly_remaining + org.bonus_tokens
        estimated = max(0, int(estimated_tokens or 0))
        allowed = remaining >= estimated
        reset_date = _as_utc(org.token_reset_date)

        reason = None
        if not allowed:
            reason = (
                f"Token budget exceeded: {remaining} tokens remaining, "
                f"{estimated} estimated for this run."
            )

        return {
            "allowed": allowed,
            "reason": reason,
            "remaining": remaining,
            "monthlyRemaining": monthly_remaining,
            "bonus": org.bonus_tokens,
            "plan": org.plan,
            "canPurchaseMore": org.plan in PURCHASE_ENABLED_PLANS,
            "suggestUpgrade": not allowed and org.plan == "BASIC",
            "estimatedTokens": estimated,
            "resetDate": reset_date.isoformat() if reset_date else None,
            "daysUntilReset": self._days_until(reset_date),
        }

    def record_usage(self, org_id: int, input_tokens: int, output_tokens: int, *,
                     project_id: int | None = None, stage_key: str | None = None,
                     job_id: int | None = None, provider: str | None = None,
                     model: str | None = None) -> TokenUsage:
        """
        Record the actual consumption of one AI call.

        Usage that already happened is never rejected; it is split over
        the pools by split_consumption().
        """
        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        total = input_tokens + output_tokens

        org = self.get_organization(org_id)
        self._reset_if_needed(org)

        split = None
        for _ in range(MAX_UPDATE_RETRIES):
            used, limit, bonus = org.monthly_tokens_used, org.monthly_token_limit, org.bonus_tokens
            split = split_consumption(total, used, limit, bonus)
            rows = Organization.query.filter_by(
                id=org.id, monthly_tokens_used=used, bonus_tokens=bonus,
            ).update(
                {
                    "monthly_tokens_used": used + split["monthly"] + split["overage"],
                    "bonus_tokens": bonus - split["bonus"],
                },
                synchronize_session=False,
            )
            db.session.refresh(org)
            if rows == 1:
                break
            logger.debug("Ledger conflict on org %s, retrying", org.id)
        else:
            raise RuntimeError(f"Could not record usage for org {org.id}: row kept changing")

        usage = TokenUsage(
            org_id=org.id,
            project_id=project_id,
            stage_key=stage_key,
            job_id=job_id,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
            bonus_tokens_used=split["bonus"],
        )
        db.session.add(usage)
        db.session.flush()

        if split["overage"]:
            logger.warning("Org %s exceeded its token budget by %d tokens",
                           org.id, split["overage"], extra={"org_id": org.id})
        logger.info("Recorded %d tokens (monthly=%d, bonus=%d)",
                    total, split["monthly"] + split["overage"], split["bonus"],
                    extra={"org_id": org.id, "job_id": job_id, "stage_key": stage_key})
        return usage

    def add_bonus_tokens(self, org_id: int, amount: int) -> int:
        """Add purchased tokens to the bonus pool. Returns the new bonus total."""
        if amount is None or int(amount) <= 0:
            raise ValidationError("amount must be a positive integer")
        org = self.get_organization(org_id)
        Organization.query.filter_by(id=org.id).update(
            {"bonus_tokens": Organization.bonus_tokens + int(amount)},
            synchronize_session=False,
        )
        db.session.refresh(org)
        logger.info("Added %d bonus tokens", int(amount), extra={"org_id": org.id})
        return org.bonus_tokens

    def usage_summary(self, org_id: int) -> dict:
        """Projection of the ledger fields for the usage endpoint."""
        org = self.get_organization(org_id)
        self._reset_if_needed(org)

        limit = org.monthly_token_limit
        used = org.monthly_tokens_used
        reset_date = _as_utc(org.token_reset_date)
        return {
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used) + org.bonus_tokens,
            "bonus": org.bonus_tokens,
            "percentUsed": round(used / limit * 100, 2) if limit > 0 else 0,
            "resetDate": reset_date.isoformat() if reset_date else None,
            "daysUntilReset": self._days_until(reset_date),
            "plan": org.plan,
            "canPurchaseMore": org.plan in PURCHASE_ENABLED_PLANS,
        }

    def list_usage(self, org_id: int, limit: int = 50) -> list[dict]:
        rows = (
            TokenUsage.query_for_org(org_id)
            .order_by(TokenUsage.created_at.desc(), TokenUsage.id.desc())
            .limit(limit)
            .all()
        )
        return [r.to_dict() for r in rows]

    # ── Internal ──────────────────────────────────────────────────────────

    def _reset_if_needed(self, org: Organization) -> bool:
        """Start a new cycle when the reset date has passed. Bonus tokens carry over."""
        reset_at = _as_utc(org.token_reset_date)
        now = datetime.now(timezone.utc)
        if reset_at is not None and now < reset_at:
            return False

        next_reset = (reset_at or now) + timedelta(days=TOKEN_CYCLE_DAYS)
        if next_reset <= now:
            next_reset = now + timedelta(days=TOKEN_CYCLE_DAYS)

        rows = Organization.query.filter_by(
            id=org.id,
            monthly_tokens_used=org.monthly_tokens_used,
            token_reset_date=org.token_reset_date,
        ).update(
            {"monthly_tokens_used": 0, "token_reset_date": next_reset},
            synchronize_session=False,
        )
        db.session.refresh(org)
        if rows == 1:
            logger.info("Monthly token cycle reset, next reset %s",
                        next_reset.isoformat(), extra={"org_id": org.id})
        return rows == 1

    @staticmethod
    def _days_until(reset_date: datetime | None) -> int:
        if reset_date is None:
            return 0
        seconds = (reset_date - datetime.now(timezone.utc)).total_seconds()
        return max(0, -(-int(seconds) // 86400))
