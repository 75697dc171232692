from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class QuotaKind(Enum):
    FREE_SPACE_PERCENT = 'FreeSpacePercent'
    ABSOLUTE_SIZE_CAP_GB = 'AbsoluteSizeCapGB'


@dataclass
class CacheEntry:
    """A cached file and the last time any job used it."""
    file_path: str
    last_used: datetime
    size_bytes: int = 0

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.last_used).total_seconds() / 86400.0


@dataclass(frozen=True)
class DirectoryQuota:
    """Space limit applied to a cache directory for one purge pass."""
    kind: QuotaKind
    value: float

    @classmethod
    def free_space_percent(cls, percent: float) -> 'DirectoryQuota':
        # Thresholds outside 1-50% are never useful for a shared drive
        return cls(QuotaKind.FREE_SPACE_PERCENT, min(max(percent, 1), 50))

    @classmethod
    def size_cap_gb(cls, max_size_gb: float) -> 'DirectoryQuota':
        return cls(QuotaKind.ABSOLUTE_SIZE_CAP_GB, max_size_gb)
