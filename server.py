from __future__ import annotations

from typing import Dict

import pandas as pd
import solara

from model import InequalityModel, apply_overrides, default_params, load_presets
from plots import (
    FEATURES,
    LOG_FEATURES,
    make_histogram_figure,
    make_line_figure,
    make_lorenz_figure,
    make_raster_figure,
    prepare_raster_array,
)

PRESETS = load_presets()

DEFAULTPARAMS: Dict[str, object] = dict(
    seed=42,
    **default_params(population_size=2500).to_dict(),
)

# applied to the running model between generations
LIVE_KEYS = (
    "gene_env_weight",
    "env_noise_std",
    "finance_weight",
    "finance_noise",
    "homophily_gene",
    "homophily_env",
)


def slider_label(key: str, value: float) -> str:
    if key == "gene_env_weight":
        return f"Env {(1 - value) * 100:.0f}% / {value * 100:.0f}% Gene"
    if key == "finance_weight":
        return f"Parent wealth {(1 - value) * 100:.0f}% / {value * 100:.0f}% Education"
    if key in ("homophily_gene", "homophily_env"):
        return f"Random {(1 - value) * 100:.0f}% / {value * 100:.0f}% Homophily"
    return f"Normal(0, {value:.2f})"


def status_text(model: InequalityModel, feature: str) -> str:
    gini = model.gini_history[-1] if model.gini_history else 0.0
    return f"Gen: {model.generation} | Gini: {gini:.2f} | Pop: {len(model.population)} | Feature: {feature}"


@solara.component
def InfoPanel(model: InequalityModel, feature: str):
    m = model.last_metrics or {}
    return solara.Card(
        title="Metrics",
        children=[
            solara.Markdown(f"**{status_text(model, feature)}**"),
            solara.Markdown(
                f"Top 10% share={m.get('top10_wealth_share', 0):.3f} | "
                f"Top 1% share={m.get('top1_wealth_share', 0):.3f}"
            ),
            solara.Markdown(
                f"Median wealth={m.get('median_wealth', 0):,.0f} | "
                f"Parent/child wealth corr={m.get('intergenerational_correlation', 0):.3f} "
                f"(log {m.get('log_wealth_correlation', 0):.3f})"
            ),
            solara.Markdown(
                f"Mate gap gene={m.get('mate_distance_gene', 0):.3f} | "
                f"env={m.get('mate_distance_env', 0):.3f}"
            ),
        ],
    )


@solara.component
def Controls(paramsstate, setlive, resetmodel, featurestate):
    p = paramsstate.value

    def setparam(key, value):
        paramsstate.value = {**paramsstate.value, key: value}

    def applypreset(pid):
        preset = PRESETS.get(pid)
        if preset is None:
            return
        merged = {**paramsstate.value, **preset["params"]}
        paramsstate.value = merged
        for key in LIVE_KEYS:
            setlive(key, float(merged[key]))

    solara.Markdown("### Parameters")
    solara.InputInt("Seed", value=int(p["seed"]),
                    on_value=lambda v: setparam("seed", int(v)))
    solara.SliderInt(
        "Population (on reset)", value=int(p["population_size"]),
        min=100, max=10000, step=100,
        on_value=lambda v: setparam("population_size", int(v)),
    )
    if PRESETS:
        solara.Select("Preset", value=None, values=list(PRESETS.keys()),
                      on_value=applypreset)

    solara.Select("Raster feature", value=featurestate.value, values=list(FEATURES),
                  on_value=featurestate.set)

    for key, lo, hi in (
        ("gene_env_weight", 0.0, 1.0),
        ("env_noise_std", 0.0, 2.0),
        ("finance_weight", 0.0, 1.0),
        ("finance_noise", 0.0, 2.0),
        ("homophily_gene", 0.0, 1.0),
        ("homophily_env", 0.0, 1.0),
    ):
        solara.SliderFloat(
            slider_label(key, float(p[key])),
            value=float(p[key]),
            min=lo,
            max=hi,
            step=0.01,
            on_value=lambda v, key=key: setlive(key, float(v)),
        )

    solara.Button("Apply and reset", icon_name="refresh",
                  on_click=resetmodel, color="primary", text=True)


@solara.component
def Page():
    paramsstate = solara.use_reactive(dict(DEFAULTPARAMS))
    featurestate = solara.use_reactive("wealth")
    simstate = solara.use_reactive(dict(history=None, steps=0, error=""))
    modelref = solara.use_ref(None)

    def buildmodel(params: Dict[str, object]):
        clean = dict(params)
        seed = clean.pop("seed", None)
        model = InequalityModel(seed=seed, params=default_params(**clean))
        modelref.current = model
        simstate.value = dict(history=model.history_frame(), steps=0, error="")

    def ensuremodel():
        if modelref.current is None:
            buildmodel(paramsstate.value)

    solara.use_effect(ensuremodel, [])

    def resetmodel():
        buildmodel(paramsstate.value)

    def setlive(key: str, value: float):
        paramsstate.value = {**paramsstate.value, key: value}
        if modelref.current is not None:
            apply_overrides(modelref.current.params, {key: value})

    def stepmodel(n: int = 1):
        model = modelref.current
        if model is None:
            return
        stepsdone = 0
        error = ""
        for _ in range(n):
            if not model.running:
                break
            try:
                model.step()
            except (ValueError, RuntimeError) as exc:
                error = str(exc)
                break
            stepsdone += 1
        simstate.value = dict(history=model.history_frame(),
                              steps=simstate.value["steps"] + stepsdone,
                              error=error)

    model = modelref.current
    history: pd.DataFrame = simstate.value["history"]

    if model is None or history is None:
        solara.Text("Initializing model...")
        return

    feature = featurestate.value
    with solara.Column(gap="1.25rem"):
        solara.Markdown("# Generational wealth inequality")
        with solara.Row(gap="1rem"):
            with solara.Column(gap="0.8rem", style={"minWidth": "320px"}):
                Controls(paramsstate=paramsstate, setlive=setlive,
                         resetmodel=resetmodel, featurestate=featurestate)
                solara.Button("Step", on_click=lambda: stepmodel(1))
                solara.Button("Step x10", on_click=lambda: stepmodel(10),
                              text=True, color="primary")
                solara.Button("Step x50", on_click=lambda: stepmodel(50),
                              text=True, color="primary")
                solara.Button("Reset", on_click=resetmodel,
                              icon_name="refresh", color="warning", text=True)
                solara.Markdown(f"**Generations run:** {simstate.value['steps']}")
                if simstate.value["error"]:
                    solara.Error(f"Run halted: {simstate.value['error']}")

            with solara.Column(gap="1rem", style={"alignItems": "stretch"}):
                InfoPanel(model=model, feature=feature)
                solara.FigureMatplotlib(make_raster_figure(model.population, feature))

        with solara.Row():
            solara.FigureMatplotlib(make_lorenz_figure(model.wealth_array()))
            solara.FigureMatplotlib(
                make_line_figure(history, "gini_wealth", "Gini over generations", "steelblue")
            )
            solara.FigureMatplotlib(
                make_histogram_figure(
                    prepare_raster_array(model.population, feature),
                    bins=20,
                    log10=feature in LOG_FEATURES,
                    title=f"Distribution of {feature}",
                )
            )


if __name__ == "__main__":
    print("Run: python -m solara run server:Page")
