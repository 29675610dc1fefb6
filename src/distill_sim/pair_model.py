"""
Pair models: everything the scheduler needs to know about a remote EPR pair.

The cells and modules treat a pair as an opaque value and only ever go
through a PairModel to age it, score it or purify two of them. The default
DensityMatrixModel keeps a 4x4 qiskit DensityMatrix per pair.
"""

import logging
from abc import ABC, abstractmethod

import numpy as np
import qiskit.quantum_info as qi
from qiskit import QuantumCircuit

from .configuration import Configuration, ConfigurationError

logger = logging.getLogger(__name__)

PHI_PLUS = np.array([[1, 0, 0, 1],
                     [0, 0, 0, 0],
                     [0, 0, 0, 0],
                     [1, 0, 0, 1]]) / 2


class PairModel(ABC):
    """Contract between the pipeline and whatever represents a pair state."""

    @abstractmethod
    def generate(self):
        """Return a fresh raw pair."""

    @abstractmethod
    def decohere(self, state, duration):
        """Return `state` after idling for `duration` seconds. Zero duration is the identity."""

    @abstractmethod
    def fidelity(self, state) -> float:
        """Fidelity of `state` against the reference Bell state."""

    @abstractmethod
    def purify(self, state1, state2):
        """
        Run one purification round on two pairs.
        :return: (success, purified_state, success_probability). purified_state
            is None on failure; success_probability is the chance the round
            passes post-selection.
        """


class DensityMatrixModel(PairModel):
    """
    Density-matrix pair model. Each qubit idles under amplitude damping (T1)
    followed by pure dephasing (T2), purification is the DEJMPS recurrence
    protocol with post-selection on matching parities.
    """

    def __init__(self,
                 t1=Configuration.T1,
                 t2=Configuration.T2,
                 raw_fidelity=Configuration.RAW_FIDELITY,
                 seed=None):
        Configuration.check_device(t1, t2)
        if raw_fidelity is None or not 0.25 <= raw_fidelity <= 1.0:
            raise ConfigurationError(f"raw fidelity must lie in [0.25, 1], got {raw_fidelity}")
        self.t1 = t1
        self.t2 = t2
        self.raw_fidelity = raw_fidelity
        self.rng = np.random.default_rng(seed)
        self.target = qi.Statevector(np.array([1, 0, 0, 1]) / np.sqrt(2))
        self.purify_circuit = self._dejmps_circuit()

    @staticmethod
    def werner_state(fidelity):
        """rho = F |phi+><phi+| + (1 - F)/3 (I - |phi+><phi+|)"""
        return qi.DensityMatrix(fidelity * PHI_PLUS + (1.0 - fidelity) / 3.0 * (np.eye(4) - PHI_PLUS))

    @staticmethod
    def _dejmps_circuit():
        # https://journals.aps.org/prl/pdf/10.1103/PhysRevLett.77.2818
        # qubits (0, 1) hold the sacrificed pair, (2, 3) the kept one
        circuit = QuantumCircuit(4)
        circuit.sx(0)
        circuit.sxdg(1)
        circuit.sx(2)
        circuit.sxdg(3)
        circuit.cx(2, 0)
        circuit.cx(3, 1)
        return circuit

    def generate(self):
        return self.werner_state(self.raw_fidelity)

    def idle_channel(self, duration):
        gamma = Configuration.amplitude_damping(duration, self.t1)
        lam = Configuration.pure_dephasing(duration, self.t1, self.t2)
        amplitude = qi.Kraus([np.array([[1, 0], [0, np.sqrt(1 - gamma)]]),
                              np.array([[0, np.sqrt(gamma)], [0, 0]])])
        phase = qi.Kraus([np.array([[1, 0], [0, np.sqrt(1 - lam)]]),
                          np.array([[0, 0], [0, np.sqrt(lam)]])])
        return amplitude.compose(phase)

    def decohere(self, state, duration):
        if duration <= 0:
            return state
        channel = self.idle_channel(duration)
        return state.evolve(channel, qargs=[0]).evolve(channel, qargs=[1])

    def fidelity(self, state):
        return float(qi.state_fidelity(state, self.target, validate=False))

    def purify(self, state1, state2):
        rho = state1.tensor(state2).evolve(self.purify_circuit)
        # outcomes of qubits (0, 1) indexed 00, 01, 10, 11
        probs = rho.probabilities([0, 1])
        probability = float(probs[0] + probs[3])
        rho.seed(int(self.rng.integers(np.iinfo(np.int32).max)))
        outcome, measured = rho.measure([0, 1])
        if outcome not in ("00", "11"):
            logger.debug("DEJMPS post-selection rejected outcome %s", outcome)
            return False, None, probability
        return True, qi.partial_trace(measured, [0, 1]), probability
