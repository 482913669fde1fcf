import json
from datetime import datetime

from tumulte.extensions import db


STATUS_PENDING = "pending"
STATUS_ARMED = "armed"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"

OPEN_STATUSES = (STATUS_ARMED, STATUS_ACTIVE)


def _load(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except Exception:
        return None


class Instance(db.Model):
    __tablename__ = "gamification_instances"

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("gamification_events.id"), nullable=False, index=True)

    scope = db.Column(db.String(16), nullable=False, default="individual")  # individual|group
    streamer_id = db.Column(db.String(64), nullable=True, index=True)  # individual only
    viewer_count_at_start = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)
    objective_target = db.Column(db.Integer, nullable=False, default=1)
    current_progress = db.Column(db.Integer, nullable=False, default=0)
    duration = db.Column(db.Integer, nullable=False, default=300)  # seconds

    starts_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    armed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cooldown_ends_at = db.Column(db.DateTime, nullable=True)

    trigger_data_json = db.Column(db.Text, nullable=True)
    result_json = db.Column(db.Text, nullable=True)
    execution_status = db.Column(db.String(16), nullable=True)  # pending|executed|failed
    executed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    snapshots = db.relationship(
        "InstanceStreamerSnapshot",
        backref="instance",
        order_by="InstanceStreamerSnapshot.position",
        lazy=True,
    )

    @property
    def trigger_data(self):
        return _load(self.trigger_data_json)

    @property
    def result(self):
        return _load(self.result_json)

    def is_open(self, now: datetime | None = None) -> bool:
        if self.status not in OPEN_STATUSES:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at >= (now or datetime.utcnow())

    def to_dict(self):
        target = int(self.objective_target or 0)
        progress = int(self.current_progress or 0)
        return {
            "id": int(self.id),
            "campaign_id": int(self.campaign_id),
            "event_id": int(self.event_id),
            "scope": self.scope,
            "streamer_id": self.streamer_id,
            "viewer_count_at_start": int(self.viewer_count_at_start or 0),
            "status": self.status,
            "objective_target": target,
            "current_progress": progress,
            "progress_percent": round(min(100.0, progress * 100.0 / target), 1) if target else 0.0,
            "duration": int(self.duration or 0),
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "armed_at": self.armed_at.isoformat() if self.armed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cooldown_ends_at": self.cooldown_ends_at.isoformat() if self.cooldown_ends_at else None,
            "trigger_data": self.trigger_data,
            "result": self.result,
            "execution_status": self.execution_status,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "streamers": [s.to_dict() for s in self.snapshots] if self.scope == "group" else [],
        }


class InstanceStreamerSnapshot(db.Model):
    __tablename__ = "gamification_instance_snapshots"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "streamer_id", name="uq_instance_snapshot_streamer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("gamification_instances.id"), nullable=False, index=True)
    streamer_id = db.Column(db.String(64), nullable=False)
    streamer_name = db.Column(db.String(120), nullable=True)
    viewer_count_at_start = db.Column(db.Integer, nullable=False, default=0)
    local_objective = db.Column(db.Integer, nullable=False, default=1)
    # Only column that changes after creation
    local_progress = db.Column(db.Integer, nullable=False, default=0)
    position = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "streamer_id": self.streamer_id,
            "streamer_name": self.streamer_name or "",
            "viewer_count": int(self.viewer_count_at_start or 0),
            "local_objective": int(self.local_objective or 0),
            "contributions": int(self.local_progress or 0),
        }
