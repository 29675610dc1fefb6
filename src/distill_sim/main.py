import argparse
import csv
import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from .configuration import Configuration
from .pair_model import DensityMatrixModel
from .simulator import ArchitectureConfig, run_simulation

METRICS = [
    "outputs",
    "mean_output_fidelity",
    "avg_fidelity",
    "max_fidelity",
    "distill_success_rate",
]


# ==========================================
# Helper & Main
# ==========================================
def visualize_fidelity_and_utilization(sim, output_file):
    """
    Fidelity of distilled memory over time and how busy each module was
    """
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))
    ax1.plot(sim.tracker.avg_fidelity, label="rolling average")
    ax1.plot(sim.tracker.max_fidelity, label="running max")
    ax1.axhline(sim.target_fidelity, color="grey", linestyle="--", label="target")
    ax1.set_title("Distilled Memory Fidelity")
    ax1.set_xlabel("Sample")
    ax1.set_ylabel("Fidelity")
    ax1.legend()
    ax1.grid(True)

    for name in ("input", "memory", "distillation", "distilled_memory"):
        ax2.plot(getattr(sim.modules, name).utilization_history, label=name)
    ax2.set_title("Locked Cells over Time")
    ax2.set_xlabel("Time (Cycles)")
    ax2.set_ylabel("Locked Cells")
    ax2.legend()
    ax2.grid(True)

    plt.tight_layout()
    plt.savefig(output_file, dpi=300)
    plt.close(fig)
    print(f"[Output] Plot saved to {output_file}")


def run_monte_carlo(raw_fidelities, num_runs, num_cycles, levels=Configuration.MEMORY_LEVELS, plot_dir=None):
    results = []
    for raw_fidelity in raw_fidelities:
        for run_idx in range(num_runs):
            cfg = ArchitectureConfig(
                memory_levels=levels,
                distilled_levels=levels,
                seed=run_idx,
                model=DensityMatrixModel(raw_fidelity=raw_fidelity, seed=run_idx),
                controller={"num_cycles": num_cycles},
            )
            sim = run_simulation(cfg)
            if plot_dir is not None and run_idx == 0:
                visualize_fidelity_and_utilization(sim, Path(plot_dir) / f"fidelity_utilization_f{raw_fidelity}.png")
            stats = sim.summary()
            row = {"run": run_idx, "raw_fidelity": raw_fidelity}
            row.update({metric: stats[metric] for metric in METRICS})
            results.append(row)
    return results


def summarize(results):
    """Mean and 95% CI (normal approximation) per raw fidelity and metric."""
    rows = []
    for raw_fidelity in sorted({r["raw_fidelity"] for r in results}):
        subset = [r for r in results if r["raw_fidelity"] == raw_fidelity]
        for metric in METRICS:
            values = np.array([r[metric] for r in subset], dtype=float)
            mean = float(np.mean(values))
            if len(values) > 1:
                stderr = float(np.std(values, ddof=1) / np.sqrt(len(values)))
            else:
                stderr = 0.0
            ci95 = 1.96 * stderr
            rows.append({
                "raw_fidelity": raw_fidelity,
                "metric": metric,
                "mean": mean,
                "ci95_low": mean - ci95,
                "ci95_high": mean + ci95,
            })
    return rows


def write_csv(rows, output_file, fieldnames):
    with open(output_file, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    print(f"[Output] Saved {len(rows)} rows to {output_file}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Monte Carlo sweep of the entanglement distillation pipeline")
    parser.add_argument("--raw-fidelity", type=float, nargs="+", default=[0.85, 0.9, 0.95])
    parser.add_argument("--runs", type=int, default=10)
    parser.add_argument("--cycles", type=int, default=Configuration.NUM_CYCLES)
    parser.add_argument("--levels", type=int, default=Configuration.MEMORY_LEVELS)
    parser.add_argument("--output-dir", default="output")
    parser.add_argument("--no-plots", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    results = run_monte_carlo(
        args.raw_fidelity,
        args.runs,
        args.cycles,
        levels=args.levels,
        plot_dir=None if args.no_plots else output_dir,
    )
    write_csv(results, output_dir / "monte_carlo_results.csv", ["run", "raw_fidelity"] + METRICS)
    write_csv(summarize(results), output_dir / "monte_carlo_summary.csv",
              ["raw_fidelity", "metric", "mean", "ci95_low", "ci95_high"])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
