import math
import numbers

# ==========================================
# 0. Timing Constants & Device Parameters
# ==========================================


class ConfigurationError(ValueError):
    """Raised when a timing parameter or initial state is missing or malformed."""


class Configuration:
    # Logical clock
    TIME_STEP = 1e-8
    NUM_CYCLES = 1000

    # Photon catch time: uniform in [CATCH_TIME_MIN, CATCH_TIME_MIN + CATCH_TIME_SPREAD)
    CATCH_TIME_MIN = 150e-9
    CATCH_TIME_SPREAD = 150e-9

    # Transfer durations between modules
    SWAP_IN_TIME = 100e-9
    SWAP_OUT_TIME = 100e-9
    DISTILL_TIME = 200e-9
    READOUT_TIME = 100e-9

    # Per-cell timing
    MEMORY_LOAD_TIME = 300e-9
    MEMORY_READ_TIME = 300e-9
    MEMORY_LEVELS = 2

    # Output policy
    TARGET_FIDELITY = 0.95
    FIDELITY_ERROR = 0.005
    OUTPUT_RETRIES = 3
    PRIORITY_REPEATS = 1
    FIDELITY_WINDOW = 5

    # Decoherence (seconds)
    T1 = 1e-6
    T2 = 1e-6
    RAW_FIDELITY = 0.9

    @staticmethod
    def amplitude_damping(duration, t1=None):
        """
        Amplitude damping probability after idling for `duration`
        gamma = 1 - exp(-t / T1)
        """
        if t1 is None:
            t1 = Configuration.T1
        if duration <= 0:
            return 0.0
        return 1.0 - math.exp(-duration / t1)

    @staticmethod
    def pure_dephasing(duration, t1=None, t2=None):
        """
        Phase damping parameter left over once T1 is accounted for
        1/T_phi = 1/T2 - 1/(2 T1), lambda = 1 - exp(-2t / T_phi)
        """
        if t1 is None:
            t1 = Configuration.T1
        if t2 is None:
            t2 = Configuration.T2
        rate = 1.0 / t2 - 1.0 / (2.0 * t1)
        if duration <= 0 or rate <= 0:
            return 0.0
        return 1.0 - math.exp(-2.0 * duration * rate)

    @staticmethod
    def check_device(t1, t2):
        if t1 is None or t2 is None:
            raise ConfigurationError("T1 and T2 must both be given")
        if t1 <= 0 or t2 <= 0:
            raise ConfigurationError(f"T1 and T2 must be positive, got T1={t1}, T2={t2}")
        if t2 > 2.0 * t1:
            raise ConfigurationError(f"T2={t2} exceeds the physical bound 2*T1={2.0 * t1}")

    @staticmethod
    def check_duration(name, value):
        if value is None:
            raise ConfigurationError(f"missing required timing parameter '{name}'")
        if not isinstance(value, numbers.Real) or isinstance(value, bool):
            raise ConfigurationError(f"timing parameter '{name}' must be a number, got {value!r}")
        if value < 0 or math.isnan(value):
            raise ConfigurationError(f"timing parameter '{name}' must be non-negative, got {value}")
        return float(value)
