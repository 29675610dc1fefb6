from collections import deque

import pytest

from distill_sim import (
    DistillationCell,
    DistillationModule,
    DistilledMemoryModule,
    EntanglementDistillationController,
    EPRGenerator,
    InputModule,
    MemoryCell,
    MemoryModule,
    Modules,
    PairModel,
)


class ScalarModel(PairModel):
    """
    A pair is just its fidelity. Idling loses `decay_rate` fidelity per unit
    time, purification averages the inputs and adds `gain`, and the outcome
    of each round is scripted (success when the script runs out). Every
    round reports the same `success_probability`.
    """

    def __init__(self, raw_fidelity=0.9, decay_rate=0.0, gain=0.05, outcomes=None, success_probability=1.0):
        self.raw_fidelity = raw_fidelity
        self.decay_rate = decay_rate
        self.gain = gain
        self.success_probability = success_probability
        self.outcomes = deque(outcomes or [])
        self.purify_calls = []

    def generate(self):
        return self.raw_fidelity

    def decohere(self, state, duration):
        if duration <= 0:
            return state
        return max(0.25, state - self.decay_rate * duration)

    def fidelity(self, state):
        return state

    def purify(self, state1, state2):
        self.purify_calls.append((state1, state2))
        success = self.outcomes.popleft() if self.outcomes else True
        if not success:
            return False, None, self.success_probability
        return True, min(1.0, (state1 + state2) / 2 + self.gain), self.success_probability


class StubClock:
    """Stands in for a TimeSource when a module is tested without a controller."""

    def __init__(self, time=0.0):
        self.time = time

    def now(self):
        return self.time


@pytest.fixture
def model():
    return ScalarModel()


@pytest.fixture
def clock():
    return StubClock()


def make_controller(model,
                    n_generators=1,
                    n_memory=2,
                    levels=1,
                    n_distill=1,
                    n_distilled=2,
                    distilled_levels=1,
                    load_time=1.0,
                    read_time=1.0,
                    **overrides):
    """Controller on a unit time step with unit transfer and memory times."""
    modules = Modules(
        input=InputModule([EPRGenerator(model=model, catch_time=1.0) for _ in range(n_generators)]),
        memory=MemoryModule([MemoryCell(levels, model, load_time=load_time, read_time=read_time) for _ in range(n_memory)]),
        distillation=DistillationModule([DistillationCell(model) for _ in range(n_distill)]),
        distilled_memory=DistilledMemoryModule(
            [MemoryCell(distilled_levels, model, load_time=load_time, read_time=read_time) for _ in range(n_distilled)]
        ),
    )
    params = dict(
        time_step=1.0,
        swap_in_time=1.0,
        swap_out_time=1.0,
        distill_time=1.0,
        readout_time=1.0,
        target_fidelity=0.95,
        fidelity_error=0.005,
        num_cycles=50,
    )
    params.update(overrides)
    return EntanglementDistillationController(modules, **params)


@pytest.fixture
def controller_factory():
    return make_controller
