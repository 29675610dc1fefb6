"""
Entanglement distillation microarchitecture simulator.

Remote EPR pairs are caught by an input module, parked in raw memory,
purified pairwise in distillation cells and parked again in distilled
memory until a pair reaches the target fidelity and is emitted. A single
controller moves pairs between modules once per clock tick using a fixed
priority order.
"""

from .clock import Clock, TimeSource
from .configuration import Configuration, ConfigurationError
from .pair_model import PairModel, DensityMatrixModel
from .cells import EPRGenerator, MemoryCell, DistillationCell
from .modules import (
    LockRecord,
    InputModule,
    MemoryModule,
    DistillationModule,
    DistilledMemoryModule,
)
from .controller import EntanglementDistillationController, Modules, OutputRecord
from .simulator import ArchitectureConfig, build_controller, run_simulation

__all__ = [
    "Clock",
    "TimeSource",
    "Configuration",
    "ConfigurationError",
    "PairModel",
    "DensityMatrixModel",
    "EPRGenerator",
    "MemoryCell",
    "DistillationCell",
    "LockRecord",
    "InputModule",
    "MemoryModule",
    "DistillationModule",
    "DistilledMemoryModule",
    "EntanglementDistillationController",
    "Modules",
    "OutputRecord",
    "ArchitectureConfig",
    "build_controller",
    "run_simulation",
]
