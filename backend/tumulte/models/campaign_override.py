from datetime import datetime

from tumulte.extensions import db


class CampaignOverride(db.Model):
    """Host-level overrides for one event in one campaign. Null means inherit."""

    __tablename__ = "campaign_gamification_configs"
    __table_args__ = (
        db.UniqueConstraint("campaign_id", "event_id", name="uq_campaign_event_config"),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("gamification_events.id"), nullable=False, index=True)

    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    cost = db.Column(db.Integer, nullable=True)
    objective_coefficient = db.Column(db.Float, nullable=True)
    minimum_objective = db.Column(db.Integer, nullable=True)
    duration = db.Column(db.Integer, nullable=True)
    cooldown = db.Column(db.Integer, nullable=True)
    max_contributions_per_user = db.Column(db.Integer, nullable=False, default=0)  # 0 = unlimited

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id) if self.id else None,
            "campaign_id": int(self.campaign_id),
            "event_id": int(self.event_id),
            "is_enabled": bool(self.is_enabled),
            "cost": self.cost,
            "objective_coefficient": self.objective_coefficient,
            "minimum_objective": self.minimum_objective,
            "duration": self.duration,
            "cooldown": self.cooldown,
            "max_contributions_per_user": int(self.max_contributions_per_user or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
