import argparse
import os

import numpy as np

from model import InequalityModel, default_params, load_presets, preset_params


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the generational wealth-inequality simulation.")
    parser.add_argument("--generations", type=int, default=50)
    parser.add_argument("--population", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--preset", type=str, default=None,
                        choices=sorted(load_presets().keys()) or None)

    parser.add_argument("--gene-env-weight", type=float, default=None)
    parser.add_argument("--env-noise-std", type=float, default=None)
    parser.add_argument("--finance-weight", type=float, default=None)
    parser.add_argument("--finance-noise", type=float, default=None)
    parser.add_argument("--homophily-gene", type=float, default=None)
    parser.add_argument("--homophily-env", type=float, default=None)
    parser.add_argument("--k-neighbors", type=int, default=None)
    parser.add_argument("--mutation-rate", type=float, default=None)

    parser.add_argument("--report-every", type=int, default=10)
    parser.add_argument("--out", type=str, default="results")
    parser.add_argument("--no-save", action="store_true", default=False)
    return parser


def params_from_args(args: argparse.Namespace):
    overrides = {}
    if args.population is not None:
        overrides["population_size"] = args.population
    for key in (
        "gene_env_weight",
        "env_noise_std",
        "finance_weight",
        "finance_noise",
        "homophily_gene",
        "homophily_env",
        "k_neighbors",
        "mutation_rate",
    ):
        value = getattr(args, key)
        if value is not None:
            overrides[key] = value
    if args.preset:
        return preset_params(args.preset, **overrides)
    return default_params(**overrides)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        params = params_from_args(args).validate()
    except ValueError as exc:
        print(f"Invalid parameters: {exc}")
        return 2

    model = InequalityModel(seed=args.seed, params=params)
    print(
        f"Starting simulation: {len(model.population)} people, {args.generations} generations"
        + (f", preset={args.preset}" if args.preset else "")
    )
    print(f"Gen 0 | Gini={model.gini_history[-1]:.3f}")

    report_every = max(1, args.report_every)
    for _ in range(args.generations):
        if not model.running:
            break
        try:
            model.step()
        except (ValueError, RuntimeError) as exc:
            print(f"Run halted at generation {model.generation + 1}: {exc}")
            return 1
        m = model.last_metrics
        if model.generation % report_every == 0:
            print(
                f"Gen {model.generation} | Pop={len(model.population)} "
                f"Gini={m['gini_wealth']:.3f} "
                f"Top10={m['top10_wealth_share']:.3f} "
                f"IGC={m['intergenerational_correlation']:.3f} "
                f"logIGC={m['log_wealth_correlation']:.3f}"
            )

    history = model.history_frame()

    print("\n" + "=" * 20 + " FINAL GENERATION " + "=" * 20)
    last = history.iloc[-1]
    print(f"{'Metric':32} {'Start':>12} {'Final':>12}")
    print("-" * 58)
    for col in (
        "gini_wealth",
        "top10_wealth_share",
        "top1_wealth_share",
        "median_wealth",
        "intergenerational_correlation",
        "log_wealth_correlation",
        "mate_distance_gene",
        "mate_distance_env",
    ):
        print(f"{col:32} {history[col].iloc[0]:12.3f} {last[col]:12.3f}")
    print(f"\nMean Gini over the run={np.mean(model.gini_history):.3f}")

    if args.no_save:
        return 0

    os.makedirs(args.out, exist_ok=True)
    meta = model.run_metadata
    for k, v in meta.items():
        history[f"meta_{k}"] = v
    history.to_csv(os.path.join(args.out, "generations.csv"), index=False)
    cohort = model.cohort_frame()
    cohort.to_csv(os.path.join(args.out, "final_cohort.csv"), index=False)
    print(
        f"Data saved to {os.path.join(args.out, 'generations.csv')} "
        f"and {os.path.join(args.out, 'final_cohort.csv')}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
