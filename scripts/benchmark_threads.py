#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from kelly_sweep import run_kelly_sweep


def run_case(name, config):
    t0 = time.perf_counter()
    try:
        result = run_kelly_sweep(config=config, verbose=False)
    except Exception as exc:
        elapsed = time.perf_counter() - t0
        print(f"\n{name}")
        print(f"  elapsed_s:             {elapsed:.3f}")
        print(f"  status:                FAILED")
        print(f"  error:                 {exc!r}")
        return None, None
    elapsed = time.perf_counter() - t0
    execution = result["execution"]
    best = result["best"]
    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  mode:                  {execution['mode']}")
    print(f"  workers_used:          {execution['workers_used']}")
    print(f"  start_method:          {execution['start_method']}")
    print(f"  partition_sizes:       {execution['partition_sizes']}")
    print(f"  grid_size:             {result['grid_size']}")
    if best is not None:
        print(f"  best_params:           {best['params']}")
        print(f"  best_growth_rate:      {best['median_growth_rate']:.6f}")
    return elapsed, result


def main():
    parser = argparse.ArgumentParser(description="Benchmark the sweep at several execution context counts.")
    parser.add_argument("--threads", type=int, nargs="+", default=[1, 2, 4])
    parser.add_argument("--experiments", type=int, default=50)
    parser.add_argument("--rounds", type=int, default=1_000)
    parser.add_argument("--step", type=float, default=0.1)
    parser.add_argument("--seed", type=int, default=123)
    args = parser.parse_args()

    base = {
        "parameters": [
            {"name": "bet", "min": 0.0, "max": 1.0, "step": args.step},
            {"name": "bet2", "min": 0.0, "max": 1.0, "step": args.step},
        ],
        "simulation": {
            "num_experiments": args.experiments,
            "num_rounds": args.rounds,
            "seed": args.seed,
        },
    }

    timings = {}
    for threads in args.threads:
        cfg = {**base, "simulation": {**base["simulation"], "num_threads": threads}}
        elapsed, _ = run_case(f"{threads} context(s)", cfg)
        timings[threads] = elapsed

    baseline = timings.get(1)
    if baseline:
        for threads, elapsed in timings.items():
            if threads != 1 and elapsed:
                print(f"\nSpeedup (1 / {threads}): {baseline / elapsed:.2f}x")


if __name__ == "__main__":
    main()
