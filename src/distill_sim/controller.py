import logging
from collections import deque
from dataclasses import dataclass
from typing import List

import numpy as np

from .clock import Clock
from .configuration import Configuration, ConfigurationError
from .modules import DistillationModule, DistilledMemoryModule, InputModule, MemoryModule

logger = logging.getLogger(__name__)


@dataclass
class Modules:
    input: InputModule
    memory: MemoryModule
    distillation: DistillationModule
    distilled_memory: DistilledMemoryModule

    def __post_init__(self):
        expected = {
            "input": InputModule,
            "memory": MemoryModule,
            "distillation": DistillationModule,
            "distilled_memory": DistilledMemoryModule,
        }
        for name, module_type in expected.items():
            if not isinstance(getattr(self, name), module_type):
                raise ConfigurationError(f"'{name}' must be a {module_type.__name__}, got {getattr(self, name)!r}")

    def all(self):
        return (self.input, self.memory, self.distillation, self.distilled_memory)

    def unlock_order(self):
        return (self.memory, self.distilled_memory, self.distillation, self.input)


@dataclass(frozen=True)
class OutputRecord:
    cycle: int
    time: float
    pair: object
    fidelity: float


class FidelityTracker:
    """
    Rolling statistics over the pairs in distilled memory. Only the last
    `window` per-sample means are kept; the average is recomputed from them
    on every update. The max series never decreases.
    """

    def __init__(self, window=Configuration.FIDELITY_WINDOW):
        if not isinstance(window, int) or window < 1:
            raise ConfigurationError(f"fidelity window must be a positive integer, got {window!r}")
        self.window = window
        self.samples = deque(maxlen=window)
        self.avg_fidelity: List[float] = []
        self.max_fidelity: List[float] = []

    def update(self, fidelities):
        if len(fidelities) == 0:
            return False
        self.samples.append(float(np.mean(fidelities)))
        self.avg_fidelity.append(float(np.mean(self.samples)))
        current_max = float(np.max(fidelities))
        if self.max_fidelity and current_max < self.max_fidelity[-1]:
            current_max = self.max_fidelity[-1]
        self.max_fidelity.append(current_max)
        return True

    def series(self):
        return list(zip(self.avg_fidelity, self.max_fidelity))


class EntanglementDistillationController:
    """
    EntanglementDistillationController is the parent microarchitecture
    controller for entanglement distillation. It owns the clock, keeps
    track of global information such as distillation progress, and does
    all data movement. Modules never talk to each other and only track
    their local cells.

    Each tick services the modules in a fixed priority order, highest
    first, so the pipeline drains towards high fidelity before taking in
    new raw pairs:
        1. emit distilled pairs at the target fidelity
        2. distilled memory -> distillation (pairs of matching fidelity)
        3. distillation -> distilled memory
        4. memory -> distillation
        5. input -> memory
    Every step checks its preconditions first and is skipped when they do
    not hold; it is simply tried again next tick.

    Memories stay locked for their own load/read times. The swap and
    readout constants here only set how long a pair is exposed to noise
    while it moves.
    """

    def __init__(self,
                 modules: Modules,
                 time_step=Configuration.TIME_STEP,
                 swap_in_time=Configuration.SWAP_IN_TIME,
                 swap_out_time=Configuration.SWAP_OUT_TIME,
                 distill_time=Configuration.DISTILL_TIME,
                 readout_time=Configuration.READOUT_TIME,
                 target_fidelity=Configuration.TARGET_FIDELITY,
                 fidelity_error=Configuration.FIDELITY_ERROR,
                 num_cycles=Configuration.NUM_CYCLES,
                 output_retries=Configuration.OUTPUT_RETRIES,
                 priority_repeats=Configuration.PRIORITY_REPEATS,
                 fidelity_window=Configuration.FIDELITY_WINDOW):
        if not isinstance(modules, Modules):
            raise ConfigurationError(f"controller needs a Modules record, got {modules!r}")
        self.SWAP_IN_TIME = Configuration.check_duration("swap_in_time", swap_in_time)
        self.SWAP_OUT_TIME = Configuration.check_duration("swap_out_time", swap_out_time)
        self.DISTILL_TIME = Configuration.check_duration("distill_time", distill_time)
        self.READOUT_TIME = Configuration.check_duration("readout_time", readout_time)
        if target_fidelity is None or not 0.0 < target_fidelity <= 1.0:
            raise ConfigurationError(f"target fidelity must lie in (0, 1], got {target_fidelity}")
        if fidelity_error is None or fidelity_error <= 0:
            raise ConfigurationError(f"fidelity error tolerance must be positive, got {fidelity_error}")
        for name, value, minimum in (("num_cycles", num_cycles, 0),
                                     ("output_retries", output_retries, 1),
                                     ("priority_repeats", priority_repeats, 1)):
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                raise ConfigurationError(f"'{name}' must be an integer >= {minimum}, got {value!r}")
        self.target_fidelity = target_fidelity
        self.fidelity_error = fidelity_error
        self.num_cycles = num_cycles
        self.output_retries = output_retries
        self.priority_repeats = priority_repeats

        self.clock = Clock(time_step)
        self.modules = modules
        self.tracker = FidelityTracker(fidelity_window)
        self.outputs: List[OutputRecord] = []
        self.transfers = {
            "output": 0,
            "distilled_to_distillation": 0,
            "distillation_to_distilled": 0,
            "memory_to_distillation": 0,
            "input_to_memory": 0,
        }
        self.bind_clock_to_modules()

    def bind_clock_to_modules(self):
        time_source = self.clock.time_source()
        for module in self.modules.all():
            module.bind_clock(time_source)

    def tick(self):
        self.clock.tick()

    # ==================================================
    # == Priority 1 : distilled memory -> output      ==
    # ==================================================
    def emit_target_pairs(self):
        distilled = self.modules.distilled_memory
        emitted = 0
        while emitted < self.output_retries and distilled.have_fidelity(self.target_fidelity, self.fidelity_error):
            pair, fidelity = distilled.get_fidelity_qubit(self.target_fidelity, self.fidelity_error,
                                                          readout_time=self.READOUT_TIME)
            self.outputs.append(OutputRecord(self.clock.cycle, self.clock.now(), pair, fidelity))
            logger.debug("cycle %d: emitted pair at fidelity %.4f", self.clock.cycle, fidelity)
            emitted += 1
        self.transfers["output"] += emitted
        return emitted > 0

    # ==================================================
    # == Priority 2 : distilled memory -> distillation ==
    # ==================================================
    def redistill_pairs(self):
        distilled = self.modules.distilled_memory
        distillation = self.modules.distillation
        if not (distilled.is_same_fidelities(self.fidelity_error) and distillation.is_cell_available()):
            return False
        cell1, index1, cell2, index2 = distilled.get_same_fidelities(self.fidelity_error)
        target = distillation.get_available_cell(self.SWAP_IN_TIME + self.DISTILL_TIME)
        rounds = max(cell1.rounds(index1), cell2.rounds(index2))
        pair1, _ = cell1.output(index1, self.SWAP_OUT_TIME)
        # a second read from the same memory waits behind the first
        second_read = 2 * self.SWAP_OUT_TIME if cell1 is cell2 else self.SWAP_OUT_TIME
        pair2, _ = cell2.output(index2, second_read)
        target.input(pair1, pair2, self.SWAP_IN_TIME, rounds)
        self.transfers["distilled_to_distillation"] += 1
        logger.debug("cycle %d: distilled pairs %r[%d], %r[%d] -> %r",
                     self.clock.cycle, cell1, index1, cell2, index2, target)
        return True

    # ==================================================
    # == Priority 3 : distillation -> distilled memory ==
    # ==================================================
    def store_distilled_pair(self):
        distillation = self.modules.distillation
        distilled = self.modules.distilled_memory
        if not (distillation.is_qubit_pending() and distilled.is_cell_available()):
            return False
        pair, rounds = distillation.get_output(self.READOUT_TIME)
        distilled.input(pair, transfer_time=self.SWAP_IN_TIME, rounds=rounds)
        self.transfers["distillation_to_distilled"] += 1
        logger.debug("cycle %d: purified pair -> distilled memory", self.clock.cycle)
        return True

    # ==================================================
    # == Priority 4 : memory -> distillation          ==
    # ==================================================
    def distill_raw_pairs(self):
        memory = self.modules.memory
        distillation = self.modules.distillation
        if not (memory.is_two_qubit_available() and distillation.is_cell_available()):
            return False
        cells = memory.find_two_qubit_address()
        target = distillation.get_available_cell(self.SWAP_IN_TIME + self.DISTILL_TIME)
        if len(cells) == 1:
            cell = cells[0]
            pair1, _ = cell.output(cell.oldest_slot(), self.SWAP_OUT_TIME)
            pair2, _ = cell.output(cell.oldest_slot(), 2 * self.SWAP_OUT_TIME)
        else:
            pair1, _ = cells[0].output(cells[0].oldest_slot(), self.SWAP_OUT_TIME)
            pair2, _ = cells[1].output(cells[1].oldest_slot(), self.SWAP_OUT_TIME)
        target.input(pair1, pair2, self.SWAP_IN_TIME)
        self.transfers["memory_to_distillation"] += 1
        logger.debug("cycle %d: raw pairs from %r -> %r", self.clock.cycle, cells, target)
        return True

    # ==================================================
    # == Priority 5 : input -> memory                 ==
    # ==================================================
    def store_raw_epr_pair(self):
        source = self.modules.input
        memory = self.modules.memory
        if not (source.is_cell_available() and memory.is_cell_available()):
            return False
        pair, catch_time = source.get_input()
        memory.input(pair, transfer_time=self.SWAP_IN_TIME)
        self.transfers["input_to_memory"] += 1
        logger.debug("cycle %d: caught raw pair in %.3e s", self.clock.cycle, catch_time)
        return True

    def step(self):
        """Run one clock tick of the priority scheduler."""
        for _ in range(self.priority_repeats):
            self.emit_target_pairs()
            self.redistill_pairs()
            self.store_distilled_pair()
            self.distill_raw_pairs()
            self.store_raw_epr_pair()
        self.tick()
        for module in self.modules.unlock_order():
            module.check_unlock()
        self.tracker.update(self.modules.distilled_memory.all_fidelities())

    def run(self, cycles=None):
        """
        Run the scheduler for `cycles` ticks (num_cycles by default).
        :return: The pairs emitted during this run.
        """
        if cycles is None:
            cycles = self.num_cycles
        first_output = len(self.outputs)
        logger.info("Running %d cycles from cycle %d (time step %.3e s)",
                    cycles, self.clock.cycle, self.clock.time_step)
        for _ in range(cycles):
            self.step()
        emitted = self.outputs[first_output:]
        logger.info("Finished at cycle %d: %d pairs emitted", self.clock.cycle, len(emitted))
        return emitted

    def fidelity_series(self):
        return self.tracker.series()

    def summary(self):
        distillation = self.modules.distillation
        attempts = distillation.successes() + distillation.failures()
        stats = {
            "cycle": self.clock.cycle,
            "time": self.clock.now(),
            "outputs": len(self.outputs),
            "distill_successes": distillation.successes(),
            "distill_failures": distillation.failures(),
            "distill_success_rate": distillation.successes() / attempts if attempts else 0.0,
            "expected_success_rate": distillation.expected_success_rate() or 0.0,
            "max_rounds": max(self.modules.distilled_memory.all_rounds(), default=0),
            "avg_fidelity": self.tracker.avg_fidelity[-1] if self.tracker.avg_fidelity else 0.0,
            "max_fidelity": self.tracker.max_fidelity[-1] if self.tracker.max_fidelity else 0.0,
            "mean_output_fidelity": float(np.mean([r.fidelity for r in self.outputs])) if self.outputs else 0.0,
        }
        stats.update(self.transfers)
        for name in ("input", "memory", "distillation", "distilled_memory"):
            logger.info("=== %s ===\n%r", name, getattr(self.modules, name))
        return stats
