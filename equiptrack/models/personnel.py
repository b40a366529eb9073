"""
Personnel model.

Minimal projection of the organisation's personnel directory: enough to
snapshot name/rank/badge on summaries and to identify inspectors.
"""

from datetime import datetime, timezone

from equiptrack.models import db


class Personnel(db.Model):
    """A member of the organisation who can hold equipment or inspect it."""

    __tablename__ = "personnel"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    middle_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=False)
    username = db.Column(db.String(100), unique=True, nullable=True)
    rank = db.Column(db.String(60), nullable=True)
    badge_number = db.Column(db.String(40), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)

    def to_dict(self):
        return {
            "id": self.id,
            "first_name": self.first_name,
            "middle_name": self.middle_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "username": self.username,
            "rank": self.rank,
            "badge_number": self.badge_number,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Personnel {self.id}: {self.full_name}>"
