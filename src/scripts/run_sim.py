#!/usr/bin/env python3
"""
Single CPM Simulation Runner

Reads a JSON or TOML model description, seeds the cells it asks for, runs the
requested number of Monte Carlo steps and saves the final grid to .npz.

Example parameter file (TOML):

    extents = [60, 60]
    T = 20
    steps = 200
    [params]
    J = [[0, 20], [20, 10]]
    LAMBDA_V = [0, 50]
    V = [0, 250]
    [[cells]]
    kind = 1
    n = 5
    radius = 20
"""

import argparse
import sys
import time
from pathlib import Path

# Add package source to path
SRC = Path(__file__).resolve().parents[1]
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cpm_sim import run_model, utils


def main():
    parser = argparse.ArgumentParser(
        description="Run a single Cellular Potts Model simulation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("params", help="JSON or TOML model description")
    parser.add_argument(
        "--steps", type=int, default=None, help="Number of MCS (overrides the file)"
    )
    parser.add_argument(
        "--seed", type=int, default=None, help="Random seed (overrides the file)"
    )
    parser.add_argument(
        "--report-every", type=int, default=None, help="Print progress every N MCS"
    )
    parser.add_argument(
        "--out",
        type=str,
        default=None,
        help="Output .npz file path (auto-generated if not provided)",
    )
    args = parser.parse_args()

    config = utils.load_params(args.params)
    if args.steps is not None:
        config["steps"] = args.steps
    if args.seed is not None:
        config["seed"] = args.seed
    if args.report_every is not None:
        config["report_every"] = args.report_every

    print(f"Running CPM simulation from {args.params}: "
          f"extents={config.get('extents')}, steps={config.get('steps', 0)}, "
          f"seed={config.get('seed')}")
    start_time = time.time()
    result = run_model(config)
    elapsed_time = time.time() - start_time

    if args.out is None:
        output_dir = Path("results")
        output_dir.mkdir(exist_ok=True)
        args.out = str(output_dir / f"cpm_S{config.get('seed')}_{utils.now_str()}.npz")

    result.ensure_meta()["elapsed_time"] = elapsed_time
    utils.save_result(args.out, result)

    print(f"✅ {result.meta['n_cells']} cells after {result.meta['time']} MCS "
          f"({elapsed_time:.2f}s)")
    print(f"✅ Result saved to {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
