"""
Scheduling behaviour of the controller on a unit clock.

Every transfer takes one time unit, so lock expiry lines up with ticks and
the pipeline can be traced by hand: a raw pair lands in memory on tick 0,
the second on tick 1, they are purified on tick 2 and the result is
emitted a few ticks later.
"""

import pytest

from distill_sim import (
    ConfigurationError,
    DistillationModule,
    EntanglementDistillationController,
    MemoryModule,
    Modules,
)

from conftest import ScalarModel, make_controller
from test_modules import assert_pool_partition


class TestPipeline:

    def test_first_output_follows_the_pipeline(self, model):
        sim = make_controller(model)
        outputs = sim.run(10)
        assert outputs, "expected at least one emitted pair"
        first = outputs[0]
        assert first.cycle == 5
        assert first.fidelity == pytest.approx(0.95)
        assert sim.transfers["memory_to_distillation"] >= 1
        assert sim.transfers["distillation_to_distilled"] >= 1

    def test_run_returns_only_new_outputs(self, model):
        sim = make_controller(model)
        first = sim.run(10)
        second = sim.run(10)
        assert len(sim.outputs) == len(first) + len(second)
        assert all(record.cycle >= 10 for record in second)

    def test_run_defaults_to_configured_cycles(self, model):
        sim = make_controller(model, num_cycles=7)
        sim.run()
        assert sim.clock.cycle == 7

    def test_pool_partition_holds_every_tick(self):
        model = ScalarModel(decay_rate=0.002, outcomes=[True, False] * 50)
        sim = make_controller(model, n_generators=2, n_memory=3, levels=2, n_distill=2, n_distilled=3)
        for _ in range(150):
            sim.step()
            for module in sim.modules.all():
                assert_pool_partition(module)

    def test_distillation_starvation_does_not_block_intake(self, model):
        sim = make_controller(model, n_memory=2, levels=3, n_distill=0)
        for tick in range(6):
            sim.step()
            assert sim.transfers["input_to_memory"] == tick + 1
        assert sum(cell.n_occupied() for cell in sim.modules.memory.cells) == 6
        sim.run(5)
        assert sim.transfers["input_to_memory"] == 6
        assert sim.transfers["memory_to_distillation"] == 0

    def test_running_max_never_decreases(self):
        model = ScalarModel(decay_rate=0.001, outcomes=[True, True, False] * 100)
        sim = make_controller(model, n_memory=3, levels=2, n_distilled=3, distilled_levels=2,
                              target_fidelity=0.99)
        sim.run(300)
        series = sim.fidelity_series()
        assert series
        maxima = [m for _, m in series]
        assert all(b >= a for a, b in zip(maxima, maxima[1:]))
        for avg, peak in series:
            assert 0.25 <= avg <= peak + 1e-12

    def test_failed_purification_produces_no_output(self):
        model = ScalarModel(outcomes=[False] * 100)
        sim = make_controller(model)
        sim.run(30)
        assert sim.outputs == []
        assert sim.transfers["distillation_to_distilled"] == 0
        assert sim.modules.distillation.failures() > 0
        assert sim.tracker.avg_fidelity == []


class TestPriorities:

    def test_output_retries_bound_emissions_per_tick(self, model):
        sim = make_controller(model, n_distill=0, n_distilled=5, output_retries=3)
        for cell in sim.modules.distilled_memory.cells:
            cell.input(0.97, 0.0)
        sim.step()
        assert len(sim.outputs) == 3
        assert all(record.cycle == 0 for record in sim.outputs)
        sim.step()
        assert len(sim.outputs) == 5

    def test_matching_distilled_pairs_are_redistilled(self, model):
        sim = make_controller(model)
        for cell in sim.modules.distilled_memory.cells:
            cell.input(0.90, 0.0)
        sim.step()
        assert sim.transfers["distilled_to_distillation"] == 1
        assert model.purify_calls[0] == (0.90, 0.90)
        assert not any(cell.has_pair() for cell in sim.modules.distilled_memory.cells)

    def test_redistillation_waits_for_a_free_cell(self, model):
        sim = make_controller(model, n_distill=0)
        for cell in sim.modules.distilled_memory.cells:
            cell.input(0.90, 0.0)
        sim.step()
        assert sim.transfers["distilled_to_distillation"] == 0
        assert all(cell.has_pair() for cell in sim.modules.distilled_memory.cells)

    def test_priority_repeats_allow_more_transfers_per_tick(self, model):
        once = make_controller(model, n_generators=2)
        once.step()
        assert once.transfers["input_to_memory"] == 1
        twice = make_controller(ScalarModel(), n_generators=2, priority_repeats=2)
        twice.step()
        assert twice.transfers["input_to_memory"] == 2

    def test_slow_memory_holds_up_intake(self, model):
        fast = make_controller(model)
        slow = make_controller(ScalarModel(), load_time=10.0, read_time=10.0)
        slow.step()
        assert slow.modules.memory.locked[0].duration == 10.0
        fast.run(10)
        slow.run(9)
        # both memories stay busy loading until cycles 10 and 11
        assert slow.transfers["input_to_memory"] == 2
        assert fast.transfers["input_to_memory"] > 2

    def test_redistilled_pair_counts_rounds(self, model):
        sim = make_controller(model)
        for cell in sim.modules.distilled_memory.cells:
            cell.input(0.90, 0.0, rounds=1)
        for _ in range(3):
            sim.step()
        assert sim.modules.distilled_memory.all_rounds() == [2]
        assert sim.summary()["max_rounds"] == 2

    def test_unlock_happens_after_the_tick(self, model):
        sim = make_controller(model)
        sim.step()
        # the generator and memory were locked for one unit at t=0 and are back at t=1
        assert sim.modules.input.locked_handles() == []
        assert sim.modules.memory.locked_handles() == []
        assert sim.modules.memory.utilization_history == [0]


class TestConfiguration:

    @pytest.mark.parametrize("overrides", [
        {"target_fidelity": 1.5},
        {"target_fidelity": 0.0},
        {"fidelity_error": 0.0},
        {"swap_in_time": -1.0},
        {"distill_time": None},
        {"readout_time": "fast"},
        {"priority_repeats": 0},
        {"output_retries": 0},
        {"num_cycles": -1},
        {"time_step": 0.0},
        {"fidelity_window": 0},
    ])
    def test_bad_parameters_raise(self, model, overrides):
        with pytest.raises(ConfigurationError):
            make_controller(model, **overrides)

    def test_modules_must_be_a_record(self):
        with pytest.raises(ConfigurationError):
            EntanglementDistillationController({"memory": MemoryModule([])})

    def test_module_slots_are_type_checked(self):
        with pytest.raises(ConfigurationError):
            Modules(
                input=MemoryModule([]),
                memory=MemoryModule([]),
                distillation=DistillationModule([]),
                distilled_memory=MemoryModule([]),
            )


class TestSummary:

    def test_summary_counts(self, model):
        sim = make_controller(model)
        sim.run(20)
        stats = sim.summary()
        assert stats["cycle"] == 20
        assert stats["outputs"] == len(sim.outputs)
        assert stats["output"] == len(sim.outputs)
        assert stats["distill_success_rate"] == 1.0
        assert stats["expected_success_rate"] == 1.0
        assert stats["mean_output_fidelity"] == pytest.approx(0.95)
        assert stats["max_fidelity"] >= stats["avg_fidelity"]
