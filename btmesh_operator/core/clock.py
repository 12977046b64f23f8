import time
from datetime import datetime, timezone

class Clock:
    """
    Authoritative local clock source.
    Deadlines and backoff gates use the monotonic clock; registry timestamps use wall time.
    """

    @staticmethod
    def monotonic() -> float:
        """
        Returns current monotonic time in seconds.
        WARNING: Do not persist. Only meaningful within this process.
        """
        return time.monotonic_ns() / 1_000_000_000

    @staticmethod
    def wall_time_iso() -> str:
        """
        Returns wall clock time as an RFC 3339 string.
        Used ONLY for lastTransitionTime written to the registry, NOT for ordering.
        """
        return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
