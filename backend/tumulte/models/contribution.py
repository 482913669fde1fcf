from datetime import datetime

from tumulte.extensions import db


class Contribution(db.Model):
    """Append-only ledger row. Never deleted; refund flips the flag once."""

    __tablename__ = "gamification_contributions"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "dedup_key", name="uq_contribution_instance_dedup"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("gamification_instances.id"), nullable=False, index=True)
    streamer_id = db.Column(db.String(64), nullable=True, index=True)

    contributor_id = db.Column(db.String(64), nullable=False, index=True)
    contributor_name = db.Column(db.String(120), nullable=True)
    amount = db.Column(db.Integer, nullable=False, default=1)

    dedup_key = db.Column(db.String(160), nullable=False)

    refunded = db.Column(db.Boolean, nullable=False, default=False)
    refunded_at = db.Column(db.DateTime, nullable=True)

    # Provider side of the refund: null until attempted, then refunded|failed|skipped
    provider_refund_status = db.Column(db.String(16), nullable=True, index=True)
    provider_refund_attempts = db.Column(db.Integer, nullable=False, default=0)
    provider_refunded_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "instance_id": int(self.instance_id),
            "streamer_id": self.streamer_id,
            "contributor_id": self.contributor_id,
            "contributor_name": self.contributor_name or "",
            "amount": int(self.amount or 0),
            "refunded": bool(self.refunded),
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "provider_refund_status": self.provider_refund_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
