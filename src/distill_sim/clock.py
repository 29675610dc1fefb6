from .configuration import ConfigurationError


class Clock:
    """
    Global logical clock. Time is kept as an integer cycle count so repeated
    ticks never accumulate floating point drift; `now()` is cycle * time_step.
    Only the controller holds the Clock itself, everything else gets a
    TimeSource.
    """

    def __init__(self, time_step=1e-8):
        if time_step is None or time_step <= 0:
            raise ConfigurationError(f"clock time step must be positive, got {time_step}")
        self.time_step = time_step
        self.cycle = 0

    def tick(self):
        self.cycle += 1

    def now(self):
        return self.cycle * self.time_step

    def time_source(self):
        return TimeSource(self)


class TimeSource:
    """Read-only view of a Clock."""

    __slots__ = ("_clock",)

    def __init__(self, clock: Clock):
        self._clock = clock

    @property
    def cycle(self):
        return self._clock.cycle

    def now(self):
        return self._clock.now()
