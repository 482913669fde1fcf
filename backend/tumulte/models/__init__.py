from .event_definition import EventDefinition  # noqa: F401
from .campaign_override import CampaignOverride  # noqa: F401
from .streamer_override import StreamerOverride  # noqa: F401
from .instance import Instance, InstanceStreamerSnapshot  # noqa: F401
from .contribution import Contribution  # noqa: F401

from .audit_log import AuditLog  # noqa: F401
