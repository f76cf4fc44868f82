# expander.py
from __future__ import annotations

from itertools import product
from typing import Dict, Iterable, List, Mapping, Tuple

from .errors import ConfigError
from .model import (
    INHERITED,
    IncludeRule,
    JobSpec,
    MatrixModel,
    Phase,
    Stage,
    resolve,
)


def base_entries(model: MatrixModel) -> List[Dict[str, str]]:
    """
    Cross-product of the declared axes, first axis varying slowest.

    With no axes declared there are no base entries (the matrix is made of
    include rows only).
    """
    if not model.axes:
        return []
    names = model.axis_names
    return [dict(zip(names, combo)) for combo in product(*(a.values for a in model.axes))]


def _excluded(model: MatrixModel, axes: Mapping[str, str], env: Mapping[str, str]) -> bool:
    return any(rule.selector.matches(axes, env) for rule in model.excludes)


def _allowed_to_fail(model: MatrixModel, axes: Mapping[str, str], env: Mapping[str, str]) -> bool:
    return any(rule.selector.matches(axes, env) for rule in model.allow_failures)


def _stages(phase: Phase, commands: Iterable[str]) -> Tuple[Stage, ...]:
    return tuple(Stage(phase=phase, run=cmd) for cmd in commands)


def job_name(axes: Mapping[str, str], env: Mapping[str, str]) -> str:
    parts = [f"{k}={v}" for k, v in axes.items()]
    parts += [f"{k}={v}" for k, v in env.items()]
    return " ".join(parts) or "default"


def _resolve_row(
    model: MatrixModel,
    number: int,
    axes: Dict[str, str],
    rule: IncludeRule | None,
) -> JobSpec:
    row_env = dict(rule.env) if rule else {}
    env = {**model.env, **row_env}

    setup = resolve(rule.setup if rule else INHERITED, model.pipeline.setup)
    before_script = resolve(rule.before_script if rule else INHERITED, model.pipeline.before_script)
    script = resolve(rule.script if rule else INHERITED, model.pipeline.script)

    allow_failure = bool(rule and rule.allow_failure) or _allowed_to_fail(model, axes, env)

    name = rule.name if rule and rule.name else job_name(axes, row_env)

    job = JobSpec(
        number=number,
        name=name,
        axes=axes,
        env=env,
        setup=_stages(Phase.SETUP, setup),
        before_script=_stages(Phase.BEFORE_SCRIPT, before_script),
        script=_stages(Phase.SCRIPT, script),
        allow_failure=allow_failure,
        included=rule is not None,
    )
    if not job.stages:
        where = f"matrix.include ({name})" if rule else f"matrix ({name})"
        raise ConfigError("job has no stages to run; declare a script", location=where)
    return job


def expand(model: MatrixModel) -> Tuple[JobSpec, ...]:
    """
    Expand a matrix model into its ordered list of concrete jobs.

    Base rows come first in cross-product order (minus excluded rows),
    followed by one row per include rule in declaration order. Include rows
    are never matched against base rows and never excluded. Jobs are
    numbered from 1 in output order.

    Pure: the same model always yields the same jobs.
    """
    rows: List[Tuple[Dict[str, str], IncludeRule | None]] = []

    for axes in base_entries(model):
        if _excluded(model, axes, model.env):
            continue
        rows.append((axes, None))

    for rule in model.includes:
        # keep declared axis order for stable names
        axes = {name: rule.axes[name] for name in model.axis_names if name in rule.axes}
        rows.append((axes, rule))

    return tuple(
        _resolve_row(model, number, axes, rule)
        for number, (axes, rule) in enumerate(rows, start=1)
    )
