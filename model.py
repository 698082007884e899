"""Generational wealth-inequality model: genes, environment, assortative mating (Mesa 3.x)."""

from __future__ import annotations

import copy
import json
import math
import os
from dataclasses import dataclass, field, fields
from typing import Dict, List, NamedTuple, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm, rankdata

from mesa import DataCollector, Model

from spatial import MateIndex

# Wealth model calibration
MU_L = math.log(1_000)   # median of the log-normal bulk
SIGMA_L = 0.5            # spread of the bulk
KAPPA = 1.0              # Pareto tail exponent (larger -> thinner tail)
TAIL_EPS = float(np.finfo(float).eps)
CATASTROPHE_A = 0.01     # Beta(a, b) multiplier on inherited wealth
CATASTROPHE_B = 1.0

FOUNDER_PARENT_WEALTH = 100_000.0
MUTATION_RATE = 0.01
MAX_ALPHA = 125.0        # stretch used when homophily == 1
MAX_EXPONENT = 700.0     # cap on shifted distances before exp()
MAX_LOG_WEALTH = 600.0   # |log potential wealth| bound, leaves headroom for sums

PRESETS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "presets.json")


def _ensure_rng(rng: np.random.Generator | None) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def normal_sample(rng: np.random.Generator, mean: float = 0.0, std: float = 1.0) -> float:
    return float(rng.normal(mean, std))


def beta_sample(rng: np.random.Generator, a: float, b: float) -> float:
    return float(rng.beta(a, b))


def normal_cdf(x: float) -> float:
    return float(norm.cdf(x))


def normal_inv(p):
    """Inverse standard-normal CDF; accepts scalars or arrays."""
    out = norm.ppf(p)
    return float(out) if np.ndim(out) == 0 else out


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class Homophily:
    gene: float = 0.0
    env: float = 0.0

    @property
    def average(self) -> float:
        return 0.5 * (self.gene + self.env)


@dataclass
class KDConfig:
    k_neighbors: int = 10


@dataclass
class Params:
    population_size: int = 6400
    gene_env_weight: float = 0.5
    env_noise_std: float = 0.1
    finance_weight: float = 0.7
    finance_noise: float = 0.1
    mutation_rate: float = MUTATION_RATE
    homophily: Homophily = field(default_factory=Homophily)
    kd: KDConfig = field(default_factory=KDConfig)

    def copy(self) -> "Params":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, float]:
        flat: Dict[str, float] = {}
        for f in fields(self):
            if f.name in ("homophily", "kd"):
                continue
            flat[f.name] = getattr(self, f.name)
        flat["homophily_gene"] = self.homophily.gene
        flat["homophily_env"] = self.homophily.env
        flat["k_neighbors"] = self.kd.k_neighbors
        return flat

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Params":
        return apply_overrides(cls(), data)

    def validate(self) -> "Params":
        if int(self.population_size) < 2:
            raise ValueError(f"population_size must be >= 2, got {self.population_size}")
        for name in ("gene_env_weight", "finance_weight", "mutation_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        for name in ("env_noise_std", "finance_noise"):
            value = getattr(self, name)
            if value < 0.0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        for name in ("gene", "env"):
            value = getattr(self.homophily, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"homophily.{name} must be in [0, 1], got {value}")
        if int(self.kd.k_neighbors) < 1:
            raise ValueError(f"kd.k_neighbors must be >= 1, got {self.kd.k_neighbors}")
        return self


_NESTED_KEYS = {
    "homophily_gene": ("homophily", "gene"),
    "homophily_env": ("homophily", "env"),
    "k_neighbors": ("kd", "k_neighbors"),
}
_INT_KEYS = {"population_size", "k_neighbors"}


def apply_overrides(params: Params, overrides: Dict[str, object]) -> Params:
    """Apply flat (``homophily_gene``) or nested (``{"homophily": {...}}``) overrides in place."""
    plain = {f.name for f in fields(Params)} - {"homophily", "kd"}
    for key, value in overrides.items():
        if key in ("homophily", "kd") and isinstance(value, dict):
            target = getattr(params, key)
            for sub_key, sub_value in value.items():
                if sub_key not in {f.name for f in fields(target)}:
                    raise ValueError(f"Unknown parameter: {key}.{sub_key}")
                cast = int if sub_key == "k_neighbors" else float
                setattr(target, sub_key, cast(sub_value))
        elif key in _NESTED_KEYS:
            group, attr = _NESTED_KEYS[key]
            cast = int if key in _INT_KEYS else float
            setattr(getattr(params, group), attr, cast(value))
        elif key in plain:
            cast = int if key in _INT_KEYS else float
            setattr(params, key, cast(value))
        else:
            raise ValueError(f"Unknown parameter: {key}")
    return params


def default_params(**overrides) -> Params:
    """Fresh copy of the defaults with overrides applied."""
    return apply_overrides(Params(), overrides)


def load_presets(path: str = PRESETS_PATH) -> Dict[str, Dict[str, object]]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Malformed presets file {path}: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("presets", []), list):
        raise ValueError(f"Malformed presets file {path}: expected a 'presets' list")
    result = {}
    for p in data.get("presets", []):
        pid = str(p.get("id", "")).strip()
        if not pid:
            raise ValueError(f"Malformed presets file {path}: preset without id")
        result[pid] = {
            "name": p.get("name", ""),
            "description": p.get("description", ""),
            "params": dict(p.get("params") or {}),
        }
    return result


def preset_params(preset_id: str, path: str = PRESETS_PATH, **overrides) -> Params:
    presets = load_presets(path)
    if preset_id not in presets:
        raise ValueError(f"Unknown preset '{preset_id}'. Available: {sorted(presets)}")
    merged = dict(presets[preset_id]["params"])
    merged.update(overrides)
    return default_params(**merged)


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParentSnapshot:
    id: int
    alleles: Tuple[float, float]
    mean_allele: float
    parent_wealth: float
    env: float
    rawenv: float
    education_score: float
    wealth: float
    parents: None = None


@dataclass
class Person:
    id: int
    alleles: Tuple[float, float]
    parent_wealth: float
    env: float = 0.0
    rawenv: float = 0.0
    education_score: float = 0.0
    wealth: float = 0.0
    parents: Tuple[ParentSnapshot, ParentSnapshot] | None = None

    def __post_init__(self):
        if len(self.alleles) != 2:
            raise ValueError(f"Person needs exactly two alleles, got {len(self.alleles)}")
        self.alleles = (float(self.alleles[0]), float(self.alleles[1]))

    @property
    def mean_allele(self) -> float:
        return (self.alleles[0] + self.alleles[1]) / 2

    def snapshot(self) -> ParentSnapshot:
        return ParentSnapshot(
            id=self.id,
            alleles=self.alleles,
            mean_allele=self.mean_allele,
            parent_wealth=self.parent_wealth,
            env=self.env,
            rawenv=self.rawenv,
            education_score=self.education_score,
            wealth=self.wealth,
        )


class Pair(NamedTuple):
    a: Person
    b: Person


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def compute_education_score(person: Person, params: Params) -> float:
    """Education score = weighted sum of mean allele and environment."""
    w = params.gene_env_weight
    return w * person.mean_allele + (1 - w) * person.env


def potential_wealth(score: float, noise_std: float, rng: np.random.Generator) -> float:
    """Log-normal bulk times a Pareto tail boost driven by the score's percentile."""
    noise = normal_sample(rng, 0.0, noise_std) if noise_std != 0 else 0.0
    u = normal_cdf(score)
    tail_prob = min(max(1.0 - u, TAIL_EPS), 1.0)
    log_wealth = MU_L + SIGMA_L * score + noise - math.log(tail_prob) / KAPPA
    return math.exp(min(max(log_wealth, -MAX_LOG_WEALTH), MAX_LOG_WEALTH))


def compute_wealth_from_score(
    person: Person, params: Params, rng: np.random.Generator | None = None
) -> float:
    rng = _ensure_rng(rng)
    merit = potential_wealth(person.education_score, params.finance_noise, rng)
    inherited = potential_wealth(person.rawenv, 0.0, rng) + person.parent_wealth * beta_sample(
        rng, CATASTROPHE_A, CATASTROPHE_B
    )
    fw = params.finance_weight
    return fw * merit + (1 - fw) * inherited


def env_from_wealth(
    people: Sequence[Person], params: Params, rng: np.random.Generator | None = None
) -> None:
    """Rank-transform the cohort's parent wealth into a standard-normal environment."""
    n = len(people)
    if n == 0:
        return
    rng = _ensure_rng(rng)
    ranks = rankdata([p.parent_wealth for p in people], method="average")
    denom = n + 1
    pct = np.maximum(ranks / denom, 1.0 / denom)
    rawenv = np.atleast_1d(normal_inv(pct))
    if params.env_noise_std > 0:
        noise = rng.normal(0.0, params.env_noise_std, size=n)
    else:
        noise = np.zeros(n)
    for person, raw, eps in zip(people, rawenv, noise):
        person.rawenv = float(raw)
        person.env = float(raw + eps)


# ---------------------------------------------------------------------------
# Mating
# ---------------------------------------------------------------------------


def stretch_factor(homophily: float) -> float:
    if homophily >= 1.0:
        return MAX_ALPHA
    return homophily / (1.0 - homophily)


def softmax_choice(distances: Sequence[float], rng: np.random.Generator) -> int:
    """Roulette-wheel pick with weights exp(-(d - d_min)), shifted distances capped."""
    d = np.asarray(distances, dtype=float)
    shifted = np.minimum(d - d.min(), MAX_EXPONENT)
    weights = np.exp(-shifted)
    r = rng.random() * weights.sum()
    idx = int(np.searchsorted(np.cumsum(weights), r, side="left"))
    return min(idx, len(weights) - 1)


def random_mate_index(initiator: int, n: int, rng: np.random.Generator) -> int:
    """Uniform draw over everyone except the initiator."""
    idx = int(rng.integers(n - 1))
    return idx + 1 if idx >= initiator else idx


def select_mating_pool(
    population: Sequence[Person], params: Params, rng: np.random.Generator | None = None
) -> List[Pair]:
    """
    Draw floor(N/2) pairs with homophily on (mean_allele, env).

    Initiators are the first half of a random permutation; anyone, initiator or
    not, can be chosen as a mate, possibly more than once.
    """
    n = len(population)
    if n < 2:
        raise ValueError(f"select_mating_pool: need at least two agents, got {n}")
    rng = _ensure_rng(rng)
    k = int(params.kd.k_neighbors)
    alpha_g = stretch_factor(params.homophily.gene)
    alpha_e = stretch_factor(params.homophily.env)
    points = [(p.mean_allele, p.env) for p in population]
    index = MateIndex(points, weights=(alpha_g, alpha_e))

    n_pairs = n // 2
    initiators = rng.permutation(n)[:n_pairs]
    avg_homophily = params.homophily.average
    pairs: List[Pair] = []
    for a_idx in initiators:
        a_idx = int(a_idx)
        if rng.random() > avg_homophily:
            b_idx = random_mate_index(a_idx, n, rng)
        else:
            neighbours = [(i, d) for i, d in index.k_nearest(points[a_idx], k + 1) if i != a_idx]
            if not neighbours:
                raise RuntimeError(f"select_mating_pool: no available mates for agent index {a_idx}")
            choice = softmax_choice([d for _, d in neighbours], rng)
            b_idx = neighbours[choice][0]
        pairs.append(Pair(population[a_idx], population[b_idx]))
    return pairs


def _inherit_allele(parent: Person, mutation_rate: float, rng: np.random.Generator) -> float:
    if rng.random() < mutation_rate:
        return normal_sample(rng)
    return parent.alleles[int(rng.integers(2))]


def mate(
    pair: Pair, params: Params, next_id_start: int, rng: np.random.Generator | None = None
) -> List[Person]:
    """Two children: slot 1 from parent a, slot 2 from parent b, small chance of mutation."""
    rng = _ensure_rng(rng)
    parent_wealth = pair.a.wealth + pair.b.wealth
    parents = (pair.a.snapshot(), pair.b.snapshot())
    kids = []
    for k in range(2):
        alleles = (
            _inherit_allele(pair.a, params.mutation_rate, rng),
            _inherit_allele(pair.b, params.mutation_rate, rng),
        )
        kids.append(
            Person(id=next_id_start + k, alleles=alleles, parent_wealth=parent_wealth, parents=parents)
        )
    return kids


# ---------------------------------------------------------------------------
# Generations
# ---------------------------------------------------------------------------


def initialize_population(params: Params, rng: np.random.Generator | None = None) -> List[Person]:
    """
    Founding generation: alleles, env and education score all ~ N(0, 1).

    Founders have no ancestry, so env is drawn directly and rawenv equals it.
    """
    rng = _ensure_rng(rng)
    pop: List[Person] = []
    for i in range(int(params.population_size)):
        alleles = (normal_sample(rng), normal_sample(rng))
        env = normal_sample(rng)
        person = Person(
            id=i,
            alleles=alleles,
            parent_wealth=FOUNDER_PARENT_WEALTH,
            env=env,
            rawenv=env,
            education_score=normal_sample(rng),
        )
        person.wealth = compute_wealth_from_score(person, params, rng)
        pop.append(person)
    return pop


def next_generation(
    old_population: Sequence[Person], params: Params, rng: np.random.Generator | None = None
) -> List[Person]:
    """Pairs -> children -> environment (whole cohort) -> education -> wealth."""
    rng = _ensure_rng(rng)
    pairs = select_mating_pool(old_population, params, rng)
    new_population: List[Person] = []
    next_id = 0
    for pair in pairs:
        kids = mate(pair, params, next_id, rng)
        new_population.extend(kids)
        next_id += len(kids)
    env_from_wealth(new_population, params, rng)
    for kid in new_population:
        kid.education_score = compute_education_score(kid, params)
        kid.wealth = compute_wealth_from_score(kid, params, rng)
    return new_population


# ---------------------------------------------------------------------------
# Inequality statistics
# ---------------------------------------------------------------------------


def compute_lorenz(wealth: Sequence[float]) -> np.ndarray:
    """(N+1, 2) array of [cumulative population share, cumulative wealth share]."""
    w = np.sort(np.asarray(wealth, dtype=float))
    n = w.size
    points = np.zeros((n + 1, 2))
    if n == 0:
        return points
    total = w.sum()
    points[1:, 0] = np.arange(1, n + 1) / n
    if total > 0:
        points[1:, 1] = np.cumsum(w) / total
    return points


def compute_gini(wealth: Sequence[float]) -> float:
    """Gini = 1 - 2 * area under the Lorenz curve (trapezoid rule)."""
    if len(wealth) == 0:
        return 0.0
    lorenz = compute_lorenz(wealth)
    x, y = lorenz[:, 0], lorenz[:, 1]
    area = float(np.sum((y[1:] + y[:-1]) / 2 * np.diff(x)))
    return 1.0 - 2.0 * area


def top_wealth_share(wealth: Sequence[float], fraction: float = 0.1) -> float:
    w = np.sort(np.asarray(wealth, dtype=float))[::-1]
    if w.size == 0 or w.sum() <= 0:
        return 0.0
    top_k = max(1, int(round(fraction * w.size)))
    return float(w[:top_k].sum() / w.sum())


def intergenerational_correlation(people: Sequence[Person], log: bool = False) -> float:
    """
    Pearson correlation of parent wealth and own wealth.

    With ``log`` both sides are log-transformed first. Returns 0.0 when either
    side is constant (founders all share one parent wealth).
    """
    if len(people) < 2:
        return 0.0
    parent = np.array([p.parent_wealth for p in people], dtype=float)
    own = np.array([p.wealth for p in people], dtype=float)
    if log:
        tiny = np.finfo(float).tiny
        parent = np.log(np.maximum(parent, tiny))
        own = np.log(np.maximum(own, tiny))
    if np.ptp(parent) == 0 or np.ptp(own) == 0:
        return 0.0
    return float(np.corrcoef(parent, own)[0, 1])


def mate_distances(people: Sequence[Person]) -> Tuple[float, float]:
    """Mean |d mean_allele| and |d env| between each person's two parents."""
    gene, env = [], []
    for p in people:
        if p.parents is None:
            continue
        a, b = p.parents
        gene.append(abs(a.mean_allele - b.mean_allele))
        env.append(abs(a.env - b.env))
    if not gene:
        return 0.0, 0.0
    return float(np.mean(gene)), float(np.mean(env))


# ---------------------------------------------------------------------------
# Mesa model
# ---------------------------------------------------------------------------


class InequalityModel(Model):
    """One Mesa step == one generation."""

    def __init__(
        self,
        seed: int | None = None,
        params: Params | None = None,
        population: Sequence[Person] | None = None,
        **overrides,
    ):
        super().__init__(seed=seed)
        self.rng = np.random.default_rng(seed)
        base = params.copy() if params is not None else Params()
        self.params = apply_overrides(base, overrides).validate()
        self.generation = 0
        self.event_log: List[Tuple[str, object]] = []
        if population is not None:
            self.population = copy.deepcopy(list(population))
        else:
            self.population = initialize_population(self.params, self.rng)
        self.running = len(self.population) >= 2
        self.gini_history: List[float] = []
        self.last_metrics: Dict[str, float] = {}
        self.run_metadata = {"seed": seed, **self.params.to_dict()}
        self.datacollector = DataCollector(
            model_reporters={
                "generation": lambda m: m.generation,
                "population": lambda m: len(m.population),
                "gini_wealth": lambda m: m.last_metrics.get("gini_wealth", 0.0),
                "mean_wealth": lambda m: m.last_metrics.get("mean_wealth", 0.0),
                "median_wealth": lambda m: m.last_metrics.get("median_wealth", 0.0),
                "top10_wealth_share": lambda m: m.last_metrics.get("top10_wealth_share", 0.0),
                "top1_wealth_share": lambda m: m.last_metrics.get("top1_wealth_share", 0.0),
                "intergenerational_correlation": lambda m: m.last_metrics.get(
                    "intergenerational_correlation", 0.0
                ),
                "log_wealth_correlation": lambda m: m.last_metrics.get("log_wealth_correlation", 0.0),
                "mate_distance_gene": lambda m: m.last_metrics.get("mate_distance_gene", 0.0),
                "mate_distance_env": lambda m: m.last_metrics.get("mate_distance_env", 0.0),
                "mean_education": lambda m: m.last_metrics.get("mean_education", 0.0),
                "mean_allele": lambda m: m.last_metrics.get("mean_allele", 0.0),
            }
        )
        self._update_metrics()
        self.log_event("init", {"population": len(self.population), "gini": self.gini_history[-1]})
        self.datacollector.collect(self)

    def wealth_array(self) -> np.ndarray:
        return np.array([p.wealth for p in self.population], dtype=float)

    def _update_metrics(self):
        wealth = self.wealth_array()
        gini = compute_gini(wealth)
        gene_gap, env_gap = mate_distances(self.population)
        self.gini_history.append(gini)
        self.last_metrics = {
            "gini_wealth": gini,
            "mean_wealth": float(wealth.mean()) if wealth.size else 0.0,
            "median_wealth": float(np.median(wealth)) if wealth.size else 0.0,
            "top10_wealth_share": top_wealth_share(wealth, 0.10),
            "top1_wealth_share": top_wealth_share(wealth, 0.01),
            "intergenerational_correlation": intergenerational_correlation(self.population),
            "log_wealth_correlation": intergenerational_correlation(self.population, log=True),
            "mate_distance_gene": gene_gap,
            "mate_distance_env": env_gap,
            "mean_education": float(np.mean([p.education_score for p in self.population]))
            if self.population
            else 0.0,
            "mean_allele": float(np.mean([p.mean_allele for p in self.population]))
            if self.population
            else 0.0,
        }

    def step(self):
        # params may be edited between generations, never during one
        step_params = self.params.copy()
        try:
            new_population = next_generation(self.population, step_params, self.rng)
        except Exception as exc:
            self.running = False
            self.log_event("error", {"generation": self.generation + 1, "error": str(exc)})
            raise
        self.population = new_population
        self.generation += 1
        self._update_metrics()
        self.log_event(
            "generation",
            {"generation": self.generation, "population": len(self.population), "gini": self.gini_history[-1]},
        )
        self.datacollector.collect(self)
        if len(self.population) < 2:
            self.running = False

    def run(self, generations: int) -> pd.DataFrame:
        for _ in range(generations):
            if not self.running:
                break
            self.step()
        return self.history_frame()

    def history_frame(self) -> pd.DataFrame:
        return self.datacollector.get_model_vars_dataframe().reset_index(drop=True)

    def cohort_frame(self) -> pd.DataFrame:
        rows = [
            dict(
                id=p.id,
                allele_1=p.alleles[0],
                allele_2=p.alleles[1],
                mean_allele=p.mean_allele,
                env=p.env,
                rawenv=p.rawenv,
                education_score=p.education_score,
                parent_wealth=p.parent_wealth,
                wealth=p.wealth,
                parent_a=p.parents[0].id if p.parents else None,
                parent_b=p.parents[1].id if p.parents else None,
            )
            for p in self.population
        ]
        df = pd.DataFrame(rows)
        if df.empty:
            return df
        return df.sort_values("wealth", ascending=False).reset_index(drop=True)

    def log_event(self, tag: str, payload: object):
        self.event_log.append((tag, payload))
