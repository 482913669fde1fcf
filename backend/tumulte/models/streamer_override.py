from datetime import datetime

from tumulte.extensions import db


REWARD_STATES = ("not_created", "active", "paused", "deleted")


class StreamerOverride(db.Model):
    __tablename__ = "streamer_gamification_configs"
    __table_args__ = (
        db.UniqueConstraint("campaign_id", "streamer_id", "event_id", name="uq_streamer_event_config"),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, nullable=False, index=True)
    streamer_id = db.Column(db.String(64), nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("gamification_events.id"), nullable=False, index=True)

    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    cost_override = db.Column(db.Integer, nullable=True)

    reward_id = db.Column(db.String(64), nullable=True, index=True)
    reward_state = db.Column(db.String(16), nullable=False, default="not_created")  # not_created|active|paused|deleted
    last_reconciled_at = db.Column(db.DateTime, nullable=True)
    # Remote deletion backoff for rewards that outlived their local linkage
    deletion_retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_deletion_retry_at = db.Column(db.DateTime, nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def clear_reward(self, state: str = "not_created"):
        self.reward_id = None
        self.reward_state = state
        self.deletion_retry_count = 0
        self.next_deletion_retry_at = None

    def to_dict(self):
        return {
            "id": int(self.id) if self.id else None,
            "campaign_id": int(self.campaign_id),
            "streamer_id": self.streamer_id,
            "event_id": int(self.event_id),
            "is_enabled": bool(self.is_enabled),
            "cost_override": self.cost_override,
            "reward_id": self.reward_id,
            "reward_state": self.reward_state or "not_created",
            "last_reconciled_at": self.last_reconciled_at.isoformat() if self.last_reconciled_at else None,
            "deletion_retry_count": int(self.deletion_retry_count or 0),
            "next_deletion_retry_at": self.next_deletion_retry_at.isoformat() if self.next_deletion_retry_at else None,
        }
