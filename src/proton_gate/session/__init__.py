"""Session record persistence and the Session Gatekeeper."""

from .gatekeeper import FreshnessResult, SessionGatekeeper
from .models import SessionRecord
from .store import SessionStore

__all__ = ["FreshnessResult", "SessionGatekeeper", "SessionRecord", "SessionStore"]
