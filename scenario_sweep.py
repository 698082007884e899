from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

import pandas as pd

from model import InequalityModel, default_params, load_presets


@dataclass
class ScenarioConfig:
    name: str
    overrides: Dict[str, float] = field(default_factory=dict)


def scenarios_from_presets(preset_ids: List[str] | None = None) -> List[ScenarioConfig]:
    presets = load_presets()
    ids = preset_ids if preset_ids is not None else list(presets.keys())
    missing = [pid for pid in ids if pid not in presets]
    if missing:
        raise ValueError(f"Unknown presets: {missing}")
    return [ScenarioConfig(name=pid, overrides=dict(presets[pid]["params"])) for pid in ids]


def evaluate_scenarios(
    scenarios: List[ScenarioConfig],
    seeds: List[int],
    population_size: int,
    generations: int,
    base_params: Dict[str, object] | None = None,
) -> pd.DataFrame:
    """Run every scenario on every seed and return the final-generation metrics."""
    rows = []
    for scenario in scenarios:
        for seed in seeds:
            overrides = dict(base_params or {})
            overrides.update(scenario.overrides)
            overrides["population_size"] = population_size
            model = InequalityModel(seed=seed, params=default_params(**overrides))
            history = model.run(generations)
            last = history.iloc[-1]
            rows.append(
                dict(
                    scenario=scenario.name,
                    seed=seed,
                    population_size=population_size,
                    generations=model.generation,
                    gini_wealth=last["gini_wealth"],
                    mean_gini=history["gini_wealth"].iloc[1:].mean() if len(history) > 1 else last["gini_wealth"],
                    top10_wealth_share=last["top10_wealth_share"],
                    intergenerational_correlation=last["intergenerational_correlation"],
                    log_wealth_correlation=last["log_wealth_correlation"],
                    mate_distance_gene=last["mate_distance_gene"],
                    mate_distance_env=last["mate_distance_env"],
                    median_wealth=last["median_wealth"],
                )
            )
    return pd.DataFrame(rows)


def summarize(results: pd.DataFrame) -> pd.DataFrame:
    metrics = [
        "gini_wealth",
        "mean_gini",
        "top10_wealth_share",
        "intergenerational_correlation",
        "log_wealth_correlation",
        "mate_distance_gene",
        "mate_distance_env",
    ]
    return results.groupby("scenario")[metrics].mean()
