"""
Organization models: the budget scope.

Models:
    - Organization: tenant row carrying the monthly token allowance,
      usage counter, bonus pool and cycle reset date
    - TokenUsage: one row per recorded AI call (actual tokens, not estimates)
"""

from datetime import datetime, timedelta, timezone

from brandforge.models import db
from brandforge.models.base import OrgScopedModel


# ── Constants ────────────────────────────────────────────────────────────────

PLANS = {"BASIC", "MID", "PRO"}

PLAN_TOKEN_LIMITS = {
    "BASIC": 100_000,
    "MID": 500_000,
    "PRO": 2_000_000,
}

# Plans allowed to buy bonus token packs
PURCHASE_ENABLED_PLANS = {"MID", "PRO"}

TOKEN_CYCLE_DAYS = 30


def _next_reset():
    return datetime.now(timezone.utc) + timedelta(days=TOKEN_CYCLE_DAYS)


# ═══════════════════════════════════════════════════════════════
# 1. ORGANIZATIONS
# ═══════════════════════════════════════════════════════════════
class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    plan = db.Column(db.String(20), nullable=False, default="BASIC")
    is_active = db.Column(db.Boolean, default=True)

    # Token ledger
    monthly_token_limit = db.Column(
        db.Integer, nullable=False, default=PLAN_TOKEN_LIMITS["BASIC"]
    )
    monthly_tokens_used = db.Column(db.Integer, nullable=False, default=0)
    bonus_tokens = db.Column(db.Integer, nullable=False, default=0)
    token_reset_date = db.Column(db.DateTime, default=_next_reset)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("plan IN ('BASIC','MID','PRO')", name="ck_org_plan"),
        db.CheckConstraint("monthly_tokens_used >= 0", name="ck_org_tokens_used"),
        db.CheckConstraint("bonus_tokens >= 0", name="ck_org_bonus_tokens"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "plan": self.plan,
            "is_active": self.is_active,
            "monthly_token_limit": self.monthly_token_limit,
            "monthly_tokens_used": self.monthly_tokens_used,
            "bonus_tokens": self.bonus_tokens,
            "token_reset_date": self.token_reset_date.isoformat() if self.token_reset_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization id={self.id} slug={self.slug} plan={self.plan}>"


# ═══════════════════════════════════════════════════════════════
# 2. TOKEN USAGE RECORDS
# ═══════════════════════════════════════════════════════════════
class TokenUsage(OrgScopedModel):
    """Actual token consumption of one AI call."""
    __tablename__ = "token_usage"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True
    )
    stage_key = db.Column(db.String(60), nullable=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    provider = db.Column(db.String(20), nullable=True)
    model = db.Column(db.String(80), nullable=True)
    input_tokens = db.Column(db.Integer, nullable=False, default=0)
    output_tokens = db.Column(db.Integer, nullable=False, default=0)
    total_tokens = db.Column(db.Integer, nullable=False, default=0)
    # Portion that spilled into the bonus pool
    bonus_tokens_used = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "org_id": self.org_id,
            "project_id": self.project_id,
            "stage_key": self.stage_key,
            "job_id": self.job_id,
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "bonus_tokens_used": self.bonus_tokens_used,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TokenUsage org={self.org_id} total={self.total_tokens}>"
