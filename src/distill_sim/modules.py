import logging
from dataclasses import dataclass
from typing import Dict, List

import numpy as np

from .cells import Cell, DistillationCell, EPRGenerator, MemoryCell
from .configuration import Configuration, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockRecord:
    handle: int
    start: float
    duration: float

    def expired(self, now):
        elapsed = now - self.start
        return elapsed >= self.duration or bool(np.isclose(elapsed, self.duration, rtol=1e-9, atol=0.0))


class CellModule:
    """
    Pool of same-kind cells with lock bookkeeping.

    Cells live in an arena and are addressed by their index (the handle).
    Every handle is either in `available` (the pool, in pool-append order)
    or in `locked`, never both.
    """

    cell_type = Cell

    def __init__(self, cells):
        self.cells: List[Cell] = []
        self.available: List[int] = []
        self.locked: Dict[int, LockRecord] = {}
        self.clock = None
        # ANALYTICS: number of cells still locked after each unlock pass
        self.utilization_history: List[int] = []
        for cell in cells:
            self.add_cell(cell)

    def add_cell(self, cell):
        if not isinstance(cell, self.cell_type):
            raise ConfigurationError(f"{type(self).__name__} only accepts {self.cell_type.__name__}, got {cell!r}")
        if cell.handle is not None:
            raise ConfigurationError(f"{cell!r} already belongs to a module")
        cell.handle = len(self.cells)
        self.cells.append(cell)
        self.available.append(cell.handle)
        if self.clock is not None:
            cell.bind_clock(self.clock)

    def bind_clock(self, time_source):
        """Bind the global (read-only) clock to this module and its cells."""
        self.clock = time_source
        for cell in self.cells:
            cell.bind_clock(time_source)

    def now(self):
        if self.clock is None:
            raise ConfigurationError(f"{type(self).__name__} used before a clock was bound")
        return self.clock.now()

    def pool(self):
        return [self.cells[handle] for handle in self.available]

    def available_handles(self):
        return list(self.available)

    def locked_handles(self):
        return list(self.locked)

    def default_duration(self, cell):
        return 0.0

    def accepts(self, cell):
        return cell.is_available()

    def find_available_cell(self):
        for cell in self.pool():
            if self.accepts(cell):
                return cell
        return None

    def is_cell_available(self):
        return self.find_available_cell() is not None

    def lock_cell(self, cell, duration=None):
        if duration is None:
            duration = self.default_duration(cell)
        duration = Configuration.check_duration("lock duration", duration)
        record = LockRecord(cell.handle, self.now(), duration)
        self.available.remove(cell.handle)
        self.locked[cell.handle] = record
        cell.lock(record)
        logger.debug("%s locked %r for %.3e s", type(self).__name__, cell, duration)
        return record

    def get_available_cell(self, duration=None):
        """
        Pull the first cell that can take an operation out of the pool and
        lock it for `duration`.
        :return: The locked cell, or None if nothing qualifies.
        """
        cell = self.find_available_cell()
        if cell is None:
            return None
        self.lock_cell(cell, duration)
        return cell

    def check_unlock(self):
        """Return every cell whose lock has run its course to the pool."""
        now = self.now()
        for handle in list(self.locked.keys()):
            if self.cells[handle].lock_expired(now):
                self.locked.pop(handle)
                self.cells[handle].unlock()
                self.available.append(handle)
                logger.debug("%s unlocked %r", type(self).__name__, self.cells[handle])
        self.utilization_history.append(len(self.locked))

    def __repr__(self):
        return (f"{type(self).__name__}(cells={len(self.cells)}, "
                f"available={self.available}, locked={sorted(self.locked)})")


class InputModule(CellModule):
    """
    Catches photons from the line into local EPR pairs. A generator stays
    locked for the time it takes to catch its next photon.
    """

    cell_type = EPRGenerator

    def default_duration(self, cell):
        return cell.catch_time()

    def catch_time(self):
        """Catch time of the first pooled generator, or None if all are busy."""
        generator = self.find_available_cell()
        return None if generator is None else generator.catch_time()

    def get_input(self, duration=None):
        """
        Take a pair from the first free generator and lock it for the catch
        time (sampled from the generator unless `duration` is given).
        :return: (pair, catch_time), or None if every generator is busy.
        """
        generator = self.find_available_cell()
        if generator is None:
            return None
        if duration is None:
            duration = generator.catch_time()
        self.lock_cell(generator, duration)
        return generator.output(), duration


class MemoryModule(CellModule):
    """Pool of memory cells holding raw pairs."""

    cell_type = MemoryCell

    def default_duration(self, cell):
        return cell.load_time

    def accepts(self, cell):
        return cell.has_free_slot()

    def is_qubit_available(self):
        return any(cell.has_pair() for cell in self.pool())

    def input(self, pair, duration=None, transfer_time=None, rounds=0):
        """
        Load a pair into the first memory with a free slot, locking it for
        `duration` (the cell's load time by default). The pair picks up
        noise for `transfer_time`, or for the whole lock when not given.
        """
        cell = self.get_available_cell(duration)
        if cell is None:
            return False
        if transfer_time is None:
            transfer_time = self.locked[cell.handle].duration
        return cell.input(pair, transfer_time, rounds)

    def is_two_qubit_available(self):
        return sum(cell.n_occupied() for cell in self.pool()) >= 2

    def find_two_qubit_address(self, duration=None):
        """
        Find and lock the memories holding the next two pairs. Two separate
        memories are preferred; if only one memory has pairs, it holds both
        and is locked for two sequential reads.
        :return: A list of one or two memory cells, empty if fewer than two pairs are stored.
        """
        if not self.is_two_qubit_available():
            return []
        selected = []
        for cell in self.pool():
            if cell.has_pair():
                selected.append(cell)
            if len(selected) == 2:
                break
        reads = 2 if len(selected) == 1 else 1
        for cell in selected:
            base = cell.read_time if duration is None else duration
            self.lock_cell(cell, base * reads)
        return selected

    # -------------------------- Fidelity queries --------------------------
    def fidelity_entries(self):
        """(cell, slot, fidelity) for every stored pair, in pool order then slot order."""
        entries = []
        for cell in self.pool():
            for index, value in cell.fidelities().items():
                entries.append((cell, index, value))
        return entries

    def _find_same_fidelities(self, error):
        # O(n^2); returns the first match in scan order, not the closest pair
        entries = self.fidelity_entries()
        for cell, index, value in entries:
            for cell2, index2, value2 in entries:
                if cell is cell2 and index == index2:
                    continue
                if abs(value - value2) < error:
                    return cell, index, cell2, index2
        return None

    def is_same_fidelities(self, error=Configuration.FIDELITY_ERROR):
        return self._find_same_fidelities(error) is not None

    def get_same_fidelities(self, error=Configuration.FIDELITY_ERROR, duration=None):
        """
        Find two stored pairs whose fidelities differ by less than `error`
        and lock the memories holding them. A memory holding both is locked
        for two reads.
        :return: (cell1, index1, cell2, index2), or None.
        """
        found = self._find_same_fidelities(error)
        if found is None:
            return None
        cell, _, cell2, _ = found
        if cell is cell2:
            base = cell.read_time if duration is None else duration
            self.lock_cell(cell, 2 * base)
        else:
            self.lock_cell(cell, duration if duration is not None else cell.read_time)
            self.lock_cell(cell2, duration if duration is not None else cell2.read_time)
        return found

    def _find_fidelity(self, fidelity, error):
        for cell, index, value in self.fidelity_entries():
            # one-sided on purpose: anything above target - error qualifies
            if fidelity - value < error:
                return cell, index
        return None

    def have_fidelity(self, fidelity, error=Configuration.FIDELITY_ERROR):
        return self._find_fidelity(fidelity, error) is not None

    def get_fidelity_qubit(self, fidelity, error=Configuration.FIDELITY_ERROR, duration=None, readout_time=None):
        """
        Read out the first pair within `error` below the target fidelity,
        locking its memory for the read (the cell's read time by default).
        Readout noise lasts `readout_time`, or the whole lock when not given.
        :return: (pair, fidelity after readout), or None.
        """
        found = self._find_fidelity(fidelity, error)
        if found is None:
            return None
        cell, index = found
        record = self.lock_cell(cell, duration if duration is not None else cell.read_time)
        pair, _ = cell.output(index, record.duration if readout_time is None else readout_time)
        return pair, cell.model.fidelity(pair)


class DistilledMemoryModule(MemoryModule):
    """Memory for pairs that have been through at least one purification round."""

    def all_fidelities(self):
        """Fidelities of every stored pair, whether or not its memory is locked."""
        values = []
        for cell in self.cells:
            values.extend(cell.fidelities().values())
        return values

    def all_rounds(self):
        return [slot.rounds for cell in self.cells for slot in cell.memory.values() if slot is not None]


class DistillationModule(CellModule):
    cell_type = DistillationCell

    def default_duration(self, cell):
        return Configuration.DISTILL_TIME

    def is_qubit_pending(self):
        return any(cell.is_pending() for cell in self.pool())

    def get_output(self, duration=None):
        """
        Read the purified pair out of the first idle cell that has one,
        locking the cell for the readout.
        :return: (pair, purification rounds), or None if nothing is pending.
        """
        for cell in self.pool():
            if cell.is_pending():
                record = self.lock_cell(cell, duration if duration is not None else Configuration.READOUT_TIME)
                rounds = cell.pending_rounds
                return cell.output(record.duration), rounds
        return None

    def successes(self):
        return sum(cell.successes for cell in self.cells)

    def failures(self):
        return sum(cell.failures for cell in self.cells)

    def expected_success_rate(self):
        """Mean post-selection probability over every round attempted, or None."""
        probabilities = [p for cell in self.cells for p in cell.success_probabilities]
        if not probabilities:
            return None
        return float(np.mean(probabilities))
