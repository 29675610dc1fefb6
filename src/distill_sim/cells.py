import copy
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from .configuration import Configuration, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class StoredPair:
    state: object
    time: float
    # purification rounds the pair has been through, 0 for a raw pair
    rounds: int = 0


class Cell:
    """
    Smallest lockable resource. A module locks a cell when it claims it for an
    operation and unlocks it once the lock has run its course; the cell only
    remembers the current lock so it can answer availability queries.
    """

    def __init__(self, model=None):
        self.model = model
        self.clock = None
        self.handle = None
        self.lock_record = None

    def bind_clock(self, time_source):
        self.clock = time_source

    def now(self):
        if self.clock is None:
            raise ConfigurationError(f"{self!r} used before a clock was bound")
        return self.clock.now()

    def _require_model(self):
        if self.model is None:
            raise ConfigurationError(f"{self!r} has no pair model configured")
        return self.model

    # -------------------------- Locking --------------------------
    @property
    def locked(self):
        return self.lock_record is not None

    def lock(self, record):
        self.lock_record = record

    def unlock(self):
        self.lock_record = None

    def lock_expired(self, now):
        return self.lock_record is not None and self.lock_record.expired(now)

    def is_available(self):
        return not self.locked

    def __repr__(self):
        return f"{type(self).__name__}(handle={self.handle})"


class EPRGenerator(Cell):
    """
    Catches a heralded photon from the line and transduces it into a local
    EPR pair. The pair is either regenerated from the model on each fetch or
    copied from a fixed state set through `input`.
    """

    def __init__(self,
                 model=None,
                 state=None,
                 catch_time: Optional[float] = None,
                 catch_time_min=Configuration.CATCH_TIME_MIN,
                 catch_time_spread=Configuration.CATCH_TIME_SPREAD,
                 seed=None):
        super().__init__(model)
        self.state = state
        if catch_time is not None:
            catch_time = Configuration.check_duration("catch_time", catch_time)
        self.fixed_catch_time = catch_time
        self.catch_time_min = Configuration.check_duration("catch_time_min", catch_time_min)
        self.catch_time_spread = Configuration.check_duration("catch_time_spread", catch_time_spread)
        self.rng = np.random.default_rng(seed)
        self.generated = 0

    def catch_time(self):
        if self.fixed_catch_time is not None:
            return self.fixed_catch_time
        return float(self.rng.random() * self.catch_time_spread + self.catch_time_min)

    def input(self, state):
        self.state = state

    def output(self):
        if self.state is not None:
            pair = copy.deepcopy(self.state)
        elif self.model is not None:
            pair = self.model.generate()
        else:
            raise ConfigurationError(f"{self!r} has no pair source configured")
        self.generated += 1
        return pair


class MemoryCell(Cell):
    """
    A transmon coupled to a multimode cavity. Pairs are swapped into the
    lowest empty mode and swapped back out by index. Decoherence while
    stored is applied lazily, at read time, from the load timestamp.
    """

    def __init__(self,
                 levels=Configuration.MEMORY_LEVELS,
                 model=None,
                 load_time=Configuration.MEMORY_LOAD_TIME,
                 read_time=Configuration.MEMORY_READ_TIME):
        super().__init__(model)
        if not isinstance(levels, int) or isinstance(levels, bool) or levels < 1:
            raise ConfigurationError(f"memory cell needs at least one level, got {levels!r}")
        self.levels = levels
        self.load_time = Configuration.check_duration("load_time", load_time)
        self.read_time = Configuration.check_duration("read_time", read_time)
        self.memory: Dict[int, Optional[StoredPair]] = {i: None for i in range(levels)}

    def n_free(self):
        return sum(1 for slot in self.memory.values() if slot is None)

    def n_occupied(self):
        return self.levels - self.n_free()

    def has_free_slot(self):
        return any(slot is None for slot in self.memory.values())

    def has_pair(self):
        return any(slot is not None for slot in self.memory.values())

    def is_available(self):
        return not self.locked and self.has_free_slot()

    def oldest_slot(self):
        """Index of the pair with the earliest load time, lowest index on ties."""
        oldest = None
        for index, slot in self.memory.items():
            if slot is None:
                continue
            if oldest is None or slot.time < self.memory[oldest].time:
                oldest = index
        return oldest

    def fidelities(self):
        model = self._require_model()
        return {index: model.fidelity(slot.state)
                for index, slot in self.memory.items() if slot is not None}

    def rounds(self, index):
        slot = self.memory.get(index)
        return None if slot is None else slot.rounds

    def input(self, pair, duration, rounds=0):
        for index, slot in self.memory.items():
            if slot is None:
                state = self._require_model().decohere(pair, duration)
                self.memory[index] = StoredPair(state, self.now(), rounds)
                logger.debug("%r stored pair (%d rounds) in slot %d", self, rounds, index)
                return True
        return False

    def output(self, index, readout_duration):
        """
        :return: (decohered pair, load timestamp), or None if the slot is empty
        """
        slot = self.memory.get(index)
        if slot is None:
            return None
        elapsed = readout_duration + self.now() - slot.time
        state = self._require_model().decohere(slot.state, elapsed)
        self.memory[index] = None
        logger.debug("%r read slot %d after %.3e s", self, index, elapsed)
        return state, slot.time


class DistillationCell(Cell):
    """
    Holds two pairs and purifies them as soon as they arrive. A successful
    round leaves one pending output; a failed round consumes both inputs.
    """

    def __init__(self, model=None):
        super().__init__(model)
        self.pending = None
        self.pending_rounds = 0
        self.successes = 0
        self.failures = 0
        # post-selection probability of every round attempted
        self.success_probabilities = []

    def is_pending(self):
        return self.pending is not None

    def is_available(self):
        return not self.locked and not self.is_pending()

    def expected_success_rate(self):
        if not self.success_probabilities:
            return None
        return float(np.mean(self.success_probabilities))

    def input(self, pair1, pair2, duration, rounds=0):
        """
        Purify two pairs. `rounds` is the larger round count of the inputs,
        the purified pair carries one more.
        """
        if self.is_pending():
            return False
        model = self._require_model()
        pair1 = model.decohere(pair1, duration)
        pair2 = model.decohere(pair2, duration)
        success, purified, probability = model.purify(pair1, pair2)
        self.success_probabilities.append(probability)
        if success:
            self.pending = purified
            self.pending_rounds = rounds + 1
            self.successes += 1
        else:
            self.pending = None
            self.pending_rounds = 0
            self.failures += 1
        logger.debug("%r purification %s (p=%.4f)", self, "succeeded" if success else "failed", probability)
        return True

    def output(self, readout_duration):
        if not self.is_pending():
            return None
        pair = self._require_model().decohere(self.pending, readout_duration)
        self.pending = None
        return pair
