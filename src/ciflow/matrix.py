# matrix.py
from __future__ import annotations

from dataclasses import replace
from itertools import product
from typing import Any, Dict, List, Mapping

from .config import has_expressions, render, render_labels
from .model import JobInstance, JobTemplate, StepSpec


def _matches(combo: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in entry.items())


def combinations(template: JobTemplate) -> List[Dict[str, Any]]:
    """
    Cartesian product of the strategy axes.

    Ordering: axis declaration order, then value declaration order.
    No axes and no includes -> [{}] (exactly one instance). Axes whose
    combinations are all excluded -> [] (the job contributes no instances).
    """
    strategy = template.strategy
    axes = list(strategy.axes.items())
    names = [name for name, _ in axes]

    combos: List[Dict[str, Any]] = []
    if axes:
        combos = [dict(zip(names, values)) for values in product(*(vals for _, vals in axes))]

    if strategy.exclude:
        combos = [c for c in combos if not any(_matches(c, e) for e in strategy.exclude)]

    # include: extend every combination whose axis values agree with the
    # entry (never overwriting an axis value); otherwise append a new point.
    base_count = len(combos)
    for entry in strategy.include:
        entry = dict(entry)
        base_keys = [k for k in entry if k in strategy.axes]
        extended = False
        for c in combos[:base_count]:
            if all(c.get(k) == entry[k] for k in base_keys):
                c.update({k: v for k, v in entry.items() if k not in strategy.axes})
                extended = True
        if not extended:
            combos.append(entry)

    if not axes and not strategy.include:
        return [{}]
    return combos


def _bind_step(step: StepSpec, context: Mapping[str, Any]) -> StepSpec:
    command = render(step.command, context, strict=False)
    env = {k: render(v, context, strict=False) for k, v in step.env.items()}
    if command == step.command and env == dict(step.env):
        return step
    return replace(step, command=command, env=env)


def expand(template: JobTemplate) -> List[JobInstance]:
    """Expand a job template into one JobInstance per matrix point."""
    instances: List[JobInstance] = []
    for idx, combo in enumerate(combinations(template)):
        context = {"matrix": combo}

        labels = set(render_labels(template.required_labels, context))
        for axis in template.label_axes:
            if axis in combo:
                labels.add(f"{axis}={combo[axis]}")

        env = {k: render(v, context, strict=False) for k, v in template.env.items()}
        for axis, value in combo.items():
            env[f"MATRIX_{axis.upper().replace('-', '_')}"] = str(value)

        title = None
        if has_expressions(template.name):
            title = render(template.name, context, strict=False)

        instances.append(
            JobInstance(
                template=template,
                matrix=dict(combo),
                required_labels=frozenset(labels),
                env=env,
                steps=tuple(_bind_step(s, context) for s in template.steps),
                index=idx,
                title=title,
            )
        )
    return instances
