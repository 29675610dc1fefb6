from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from .cells import DistillationCell, EPRGenerator, MemoryCell
from .configuration import Configuration, ConfigurationError
from .controller import EntanglementDistillationController, Modules
from .modules import DistillationModule, DistilledMemoryModule, InputModule, MemoryModule
from .pair_model import DensityMatrixModel, PairModel


@dataclass
class ArchitectureConfig:
    n_generators: int = 1
    n_memory_cells: int = 2
    memory_levels: int = Configuration.MEMORY_LEVELS
    n_distillation_cells: int = 1
    n_distilled_cells: int = 2
    distilled_levels: int = Configuration.MEMORY_LEVELS
    memory_load_time: float = Configuration.MEMORY_LOAD_TIME
    memory_read_time: float = Configuration.MEMORY_READ_TIME
    catch_time: Optional[float] = None
    seed: Optional[int] = None
    model: Optional[PairModel] = None
    # keyword overrides for EntanglementDistillationController
    controller: Dict[str, Any] = field(default_factory=dict)


def build_controller(cfg: ArchitectureConfig) -> EntanglementDistillationController:
    for name in ("n_generators", "n_memory_cells", "n_distillation_cells", "n_distilled_cells"):
        value = getattr(cfg, name)
        if not isinstance(value, int) or value < 0:
            raise ConfigurationError(f"'{name}' must be a non-negative integer, got {value!r}")
    model = cfg.model if cfg.model is not None else DensityMatrixModel(seed=cfg.seed)
    seeds = np.random.SeedSequence(cfg.seed).spawn(cfg.n_generators)
    generators = [EPRGenerator(model=model, catch_time=cfg.catch_time, seed=s) for s in seeds]
    timing = dict(load_time=cfg.memory_load_time, read_time=cfg.memory_read_time)
    modules = Modules(
        input=InputModule(generators),
        memory=MemoryModule([MemoryCell(cfg.memory_levels, model, **timing) for _ in range(cfg.n_memory_cells)]),
        distillation=DistillationModule([DistillationCell(model) for _ in range(cfg.n_distillation_cells)]),
        distilled_memory=DistilledMemoryModule(
            [MemoryCell(cfg.distilled_levels, model, **timing) for _ in range(cfg.n_distilled_cells)]
        ),
    )
    return EntanglementDistillationController(modules, **cfg.controller)


def run_simulation(cfg: ArchitectureConfig) -> EntanglementDistillationController:
    sim = build_controller(cfg)
    sim.run()
    return sim
