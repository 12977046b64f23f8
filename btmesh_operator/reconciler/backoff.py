class ExponentialBackoff:
    """
    Delay before resending a command to a device.
    Doubles per retry, capped; retry 0 means no delay.
    """
    def __init__(self, base: float, cap: float, multiplier: float = 2.0):
        """
        base: delay after the first failure, in seconds
        cap: upper bound for any delay
        """
        self.base = base
        self.cap = cap
        self.multiplier = multiplier

    def delay(self, retry_count: int) -> float:
        if retry_count <= 0:
            return 0.0
        # Bound the exponent so huge retry counts do not overflow.
        exponent = min(retry_count - 1, 64)
        return min(self.cap, self.base * (self.multiplier ** exponent))

    def next_attempt(self, now: float, retry_count: int) -> float:
        return now + self.delay(retry_count)
