"""Human review channel for escalated governance decisions."""

from .broadcaster import ReviewBroadcaster
from .models import EscalationView, OutcomeResponse, StreamEnvelope, VerdictRequest

__all__ = ["EscalationView", "OutcomeResponse", "ReviewBroadcaster", "StreamEnvelope", "VerdictRequest"]
