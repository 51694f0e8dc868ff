"""Data model for the persisted verification session."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


@dataclass
class SessionRecord:
    """
    Time-boxed assertion that the vault was recently verified.

    Invariants:
    - ttl_seconds must be > 0 (sessions must expire)
    - fresh iff 0 <= now - verified_at < ttl
    - a verified_at in the future is never fresh (clock moved backwards)
    """

    verified_at: datetime
    ttl_seconds: float

    @classmethod
    def create(cls, ttl_seconds: float, now: Optional[datetime] = None) -> "SessionRecord":
        """
        Create a record verified at ``now``.

        Raises:
            ValueError: If ttl_seconds is not positive
        """
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        return cls(verified_at=now or datetime.now(timezone.utc), ttl_seconds=float(ttl_seconds))

    @property
    def expires_at(self) -> datetime:
        return self.verified_at + timedelta(seconds=self.ttl_seconds)

    def age(self, now: Optional[datetime] = None) -> float:
        """Seconds since verification."""
        return ((now or datetime.now(timezone.utc)) - self.verified_at).total_seconds()

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        age = self.age(now)
        return 0 <= age < self.ttl_seconds

    def remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds of freshness left (0 once expired)."""
        if not self.is_fresh(now):
            return 0.0
        return self.ttl_seconds - self.age(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified_at": self.verified_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionRecord":
        """
        Build from a decoded record.

        Raises:
            ValueError: If the record is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Session record must be a JSON object")
        try:
            verified_at = datetime.fromisoformat(data["verified_at"])
            ttl_seconds = float(data["ttl_seconds"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed session record: {e}") from e
        if verified_at.tzinfo is None:
            verified_at = verified_at.replace(tzinfo=timezone.utc)
        if ttl_seconds <= 0:
            raise ValueError(f"Invalid ttl_seconds in session record: {ttl_seconds}")
        return cls(verified_at=verified_at, ttl_seconds=ttl_seconds)
