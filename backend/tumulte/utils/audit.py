from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from tumulte.extensions import db
from tumulte.models import AuditLog


def audit(action: str, *, target_type: str | None = None, target_id=None, meta: dict | None = None,
          level: str = "info", commit: bool = False) -> AuditLog:
    """Persist a structured audit row and mirror it to the app logger.

    The row joins the caller's transaction unless ``commit`` is set.
    """
    now = datetime.utcnow()
    payload = dict(meta or {})
    row = AuditLog(
        action=action[:64],
        target_type=(target_type or None),
        target_id=str(target_id)[:64] if target_id is not None else None,
        meta=json.dumps(payload, default=str),
        created_at=now,
    )
    db.session.add(row)

    log = getattr(current_app.logger, level, current_app.logger.info)
    log("audit %s %s:%s %s", action, target_type or "-", target_id if target_id is not None else "-", payload)

    if commit:
        db.session.commit()
    return row
