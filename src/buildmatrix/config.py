# config.py
from __future__ import annotations

import json
import runpy
import shlex
from pathlib import Path
from typing import Annotated, Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, StrictBool, TypeAdapter, ValidationError

from .errors import ConfigError
from .model import (
    INHERITED,
    AllowFailureRule,
    Axis,
    ExcludeRule,
    IncludeRule,
    MatrixModel,
    Overridden,
    Pipeline,
    Selector,
)


# Keys an include row may carry that are neither axes nor handled attributes.
INFORMATIONAL_KEYS = frozenset({"dist", "language", "cache", "group", "services", "stage"})

# Extra axes recognised next to the language axis, in expansion order.
EXTRA_AXIS_KEYS = ("os", "arch")


def _as_list(value: Any) -> Any:
    if value is None or isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]


def _as_str_list(value: Any) -> Any:
    value = _as_list(value)
    if not isinstance(value, list):
        return value
    return [str(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else v for v in value]


StageList = Annotated[List[str], BeforeValidator(_as_list)]
AxisValues = Annotated[List[str], BeforeValidator(_as_str_list)]
EnvValue = Union[str, Dict[str, Any], List[Union[str, Dict[str, Any]]], None]

_axis_values = TypeAdapter(AxisValues)


# ---------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------

class AptAddon(BaseModel):
    model_config = ConfigDict(extra="allow")
    packages: StageList = []


class Addons(BaseModel):
    model_config = ConfigDict(extra="allow")
    apt: Optional[AptAddon] = None


class SelectorDoc(BaseModel):
    """A matrix row selector; any key other than `env` names an axis."""
    model_config = ConfigDict(extra="allow")
    env: EnvValue = None


class IncludeDoc(SelectorDoc):
    name: Optional[str] = None
    allow_failure: StrictBool = False
    sudo: Union[StrictBool, str, None] = None
    addons: Optional[Addons] = None
    before_install: Optional[StageList] = None
    install: Optional[StageList] = None
    before_script: Optional[StageList] = None
    script: Optional[StageList] = None


class MatrixDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")
    include: List[IncludeDoc] = []
    exclude: List[SelectorDoc] = []
    allow_failures: List[SelectorDoc] = []
    fail_fast: Optional[StrictBool] = None
    fast_finish: Optional[StrictBool] = None
    fast_failures: Optional[StrictBool] = None

    @property
    def fail_fast_flag(self) -> bool:
        for flag in (self.fail_fast, self.fast_finish, self.fast_failures):
            if flag is not None:
                return flag
        return False


class ConfigDoc(BaseModel):
    # top-level keys are open: the language axis lives under the language name
    model_config = ConfigDict(extra="allow")

    language: Optional[str] = None
    axes: Optional[Dict[str, AxisValues]] = None
    os: Optional[AxisValues] = None
    arch: Optional[AxisValues] = None
    env: EnvValue = None
    sudo: Union[StrictBool, str, None] = None
    addons: Optional[Addons] = None
    before_install: StageList = []
    install: StageList = []
    before_script: StageList = []
    script: StageList = []
    matrix: Optional[MatrixDoc] = None
    jobs: Optional[MatrixDoc] = None


# ---------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------

def _location(loc: tuple) -> str:
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "<root>"


def _from_validation_error(e: ValidationError, prefix: str = "") -> ConfigError:
    errors = e.errors()
    first = errors[0]
    loc = _location(tuple(first["loc"]))
    if prefix:
        loc = f"{prefix}.{loc}" if loc != "<root>" else prefix
    details = [f"{_location(tuple(err['loc']))}: {err['msg']}" for err in errors[1:]]
    return ConfigError(first["msg"], location=loc, details=details)


def parse_env(value: EnvValue, location: str) -> Dict[str, str]:
    """
    Normalize an env declaration into a dict.

    Accepts a mapping, a "K=V K2=V2" string, or a list of either.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        env: Dict[str, str] = {}
        for idx, item in enumerate(value):
            env.update(parse_env(item, f"{location}[{idx}]"))
        return env
    env = {}
    for token in shlex.split(value):
        key, sep, val = token.partition("=")
        if not sep or not key:
            raise ConfigError(f"malformed env assignment {token!r}, expected KEY=VALUE", location=location)
        env[key] = val
    return env


def _scalar(value: Any, location: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"malformed selector value {value!r}, expected a string", location=location)
    return str(value)


def _row_axes(extra: Mapping[str, Any], location: str, *, ignore: frozenset = frozenset()) -> Dict[str, str]:
    return {
        key: _scalar(value, f"{location}.{key}")
        for key, value in extra.items()
        if key not in ignore
    }


def _sudo_enabled(sudo: Union[bool, str, None]) -> bool:
    if isinstance(sudo, str):
        return sudo.strip().lower() not in ("", "false", "no", "0")
    return bool(sudo)


def setup_commands(
    before_install: List[str],
    install: List[str],
    addons: Optional[Addons],
    sudo: Union[bool, str, None],
) -> List[str]:
    """Setup stages: apt packages first, then before_install, then install."""
    cmds: List[str] = []
    if addons and addons.apt and addons.apt.packages:
        prefix = "sudo " if _sudo_enabled(sudo) else ""
        pkgs = " ".join(addons.apt.packages)
        cmds.append(f"{prefix}apt-get update -qq && {prefix}apt-get install -y {pkgs}")
    cmds.extend(before_install)
    cmds.extend(install)
    return cmds


def _declared_axes(doc: ConfigDoc) -> List[Axis]:
    extra = doc.model_extra or {}
    if doc.axes is not None:
        clashing = [k for k in (doc.language, *EXTRA_AXIS_KEYS) if k and (k in extra or getattr(doc, k, None) is not None)]
        if clashing:
            raise ConfigError(
                f"use either 'axes' or '{clashing[0]}', not both",
                location=clashing[0],
            )
        return [Axis(name=name, values=tuple(values)) for name, values in doc.axes.items()]

    axes: List[Axis] = []
    if doc.language and doc.language in extra:
        try:
            values = _axis_values.validate_python(extra[doc.language])
        except ValidationError as e:
            raise _from_validation_error(e, prefix=doc.language) from e
        axes.append(Axis(name=doc.language, values=tuple(values)))
    for key in EXTRA_AXIS_KEYS:
        values = getattr(doc, key)
        if values is not None:
            axes.append(Axis(name=key, values=tuple(values)))
    return axes


def _include_rule(row: IncludeDoc, idx: int, doc: ConfigDoc) -> IncludeRule:
    location = f"matrix.include[{idx}]"
    setup = INHERITED
    if any(v is not None for v in (row.before_install, row.install, row.addons, row.sudo)):
        setup = Overridden(tuple(setup_commands(
            row.before_install if row.before_install is not None else doc.before_install,
            row.install if row.install is not None else doc.install,
            row.addons if row.addons is not None else doc.addons,
            row.sudo if row.sudo is not None else doc.sudo,
        )))
    return IncludeRule(
        axes=_row_axes(row.model_extra or {}, location, ignore=INFORMATIONAL_KEYS),
        env=parse_env(row.env, f"{location}.env"),
        name=row.name,
        setup=setup,
        before_script=INHERITED if row.before_script is None else Overridden(tuple(row.before_script)),
        script=INHERITED if row.script is None else Overridden(tuple(row.script)),
        allow_failure=row.allow_failure,
    )


def _selector(row: SelectorDoc, location: str) -> Selector:
    return Selector(
        axes=_row_axes(row.model_extra or {}, location),
        env=parse_env(row.env, f"{location}.env"),
    )


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def load_config(data: Mapping[str, Any]) -> MatrixModel:
    """
    Build a validated MatrixModel from a nested configuration structure.

    Raises:
        ConfigError: on schema violations (non-boolean fail_fast, bad stage
            lists...), unknown axes, malformed selectors or env entries.
    """
    if not isinstance(data, Mapping):
        raise ConfigError(f"configuration must be a mapping, got {type(data).__name__}")
    try:
        doc = ConfigDoc.model_validate(dict(data))
    except ValidationError as e:
        raise _from_validation_error(e) from e

    if doc.matrix is not None and doc.jobs is not None:
        raise ConfigError("use either 'matrix' or 'jobs', not both", location="jobs")
    block = doc.matrix or doc.jobs or MatrixDoc()

    pipeline = Pipeline(
        setup=tuple(setup_commands(doc.before_install, doc.install, doc.addons, doc.sudo)),
        before_script=tuple(doc.before_script),
        script=tuple(doc.script),
    )

    return MatrixModel.load(
        _declared_axes(doc),
        [_include_rule(row, idx, doc) for idx, row in enumerate(block.include)],
        [ExcludeRule(_selector(row, f"matrix.exclude[{idx}]")) for idx, row in enumerate(block.exclude)],
        [
            AllowFailureRule(_selector(row, f"matrix.allow_failures[{idx}]"))
            for idx, row in enumerate(block.allow_failures)
        ],
        pipeline=pipeline,
        env=parse_env(doc.env, "env"),
        fail_fast=block.fail_fast_flag,
    )


def as_model(obj: Any, source: str = "<config>") -> MatrixModel:
    """Accept a MatrixModel, a config mapping, or a builder exposing build()."""
    if isinstance(obj, MatrixModel):
        return obj
    if isinstance(obj, Mapping):
        return load_config(obj)
    if callable(getattr(obj, "build", None)):
        return as_model(obj.build(), source)
    raise ConfigError(
        f"{source} must define a matrix mapping, MatrixModel or builder, got {type(obj).__name__}"
    )


def load_workflow(path: str | Path) -> MatrixModel:
    """
    Load a matrix from a file.

    A `.json` file holds the nested configuration directly. A `.py` file
    must define either:
      - matrix() -> dict | MatrixModel | MatrixBuilder
      - MATRIX = dict | MatrixModel | MatrixBuilder
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Matrix file not found: {wf_path}")

    if wf_path.suffix == ".json":
        try:
            data = json.loads(wf_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid JSON: {e.msg}", location=f"{wf_path.name}:{e.lineno}:{e.colno}") from e
        return as_model(data, wf_path.name)

    if wf_path.suffix != ".py":
        raise ConfigError(f"matrix file must be .py or .json, got: {wf_path.name}")

    module_name = f"buildmatrix_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "matrix" in globals_dict and callable(globals_dict["matrix"]):
        return as_model(globals_dict["matrix"](), wf_path.name)
    if "MATRIX" in globals_dict:
        return as_model(globals_dict["MATRIX"], wf_path.name)
    raise ConfigError(
        f"{wf_path.name} defines neither matrix() nor MATRIX",
        details=["Define matrix() -> dict or MATRIX = {...}."],
    )
