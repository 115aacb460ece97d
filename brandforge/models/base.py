"""
OrgScopedModel: abstract base class for organization-scoped models.

Every table that must be isolated per organization inherits from
OrgScopedModel instead of db.Model directly. This adds:
  - org_id FK column with index
  - query_for_org(org_id) classmethod
"""

from brandforge.models import db


class OrgScopedModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    org_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_org(cls, org_id):
        """Return a query filtered by org_id."""
        return cls.query.filter_by(org_id=org_id)
