# src/buildmatrix/dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from .config import load_config
from .model import MatrixModel


StageArg = Union[str, List[str], None]


# ---------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------

def _stages(value: StageArg) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


def include(
    *,
    env: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
    allow_failure: bool = False,
    before_install: StageArg = None,
    install: StageArg = None,
    before_script: StageArg = None,
    script: StageArg = None,
    apt_packages: Optional[List[str]] = None,
    sudo: Optional[bool] = None,
    **axes: str,
) -> Dict[str, Any]:
    """
    Describe an extra matrix row.

    Example:
        include(rust="nightly", env={"CLIPPY": "1"}, script="cargo clippy")

    Stage arguments left as None inherit the global pipeline.
    """
    row: Dict[str, Any] = dict(axes)
    if env:
        row["env"] = {k: str(v) for k, v in env.items()}
    if name is not None:
        row["name"] = name
    if allow_failure:
        row["allow_failure"] = True
    for key, value in (
        ("before_install", before_install),
        ("install", install),
        ("before_script", before_script),
        ("script", script),
    ):
        stages = _stages(value)
        if stages is not None:
            row[key] = stages
    if apt_packages is not None:
        row["addons"] = {"apt": {"packages": list(apt_packages)}}
    if sudo is not None:
        row["sudo"] = sudo
    return row


def _selector(env: Optional[Dict[str, Any]], axes: Dict[str, str]) -> Dict[str, Any]:
    row: Dict[str, Any] = dict(axes)
    if env:
        row["env"] = {k: str(v) for k, v in env.items()}
    return row


def exclude(*, env: Optional[Dict[str, Any]] = None, **axes: str) -> Dict[str, Any]:
    """Select base rows to drop, e.g. exclude(rust="beta", os="osx")."""
    return _selector(env, axes)


def allow_failure(*, env: Optional[Dict[str, Any]] = None, **axes: str) -> Dict[str, Any]:
    """Select rows whose failure does not fail the build, e.g. allow_failure(env={"KCOV": 1})."""
    return _selector(env, axes)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class MatrixBuilder:
    """
    Fluent builder producing the same nested structure a JSON config holds.

    Example:
        build_matrix()
            .axis("rust", "stable", "beta", "nightly")
            .script("cargo build --verbose", "cargo test --verbose")
            .allow_failure(env={"KCOV": "1"})
            .fail_fast()
            .build()
    """

    def __init__(self) -> None:
        self._axes: Dict[str, List[str]] = {}
        self._env: Dict[str, str] = {}
        self._before_install: List[str] = []
        self._install: List[str] = []
        self._before_script: List[str] = []
        self._script: List[str] = []
        self._apt_packages: List[str] = []
        self._sudo: bool = False
        self._include: List[Dict[str, Any]] = []
        self._exclude: List[Dict[str, Any]] = []
        self._allow_failures: List[Dict[str, Any]] = []
        self._fail_fast: bool = False

    def axis(self, name: str, *values: Any):
        self._axes[name] = [str(v) for v in values]
        return self

    def with_env(self, **env):
        # force values to str, they end up in a process environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def before_install(self, *cmds: str):
        self._before_install.extend(cmds)
        return self

    def install(self, *cmds: str):
        self._install.extend(cmds)
        return self

    def before_script(self, *cmds: str):
        self._before_script.extend(cmds)
        return self

    def script(self, *cmds: str):
        self._script.extend(cmds)
        return self

    def apt_packages(self, *packages: str, sudo: bool = True):
        self._apt_packages.extend(packages)
        self._sudo = sudo
        return self

    def include(self, **kwargs: Any):
        self._include.append(include(**kwargs))
        return self

    def exclude(self, **kwargs: Any):
        self._exclude.append(exclude(**kwargs))
        return self

    def allow_failure(self, **kwargs: Any):
        self._allow_failures.append(allow_failure(**kwargs))
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def to_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "axes": {name: list(values) for name, values in self._axes.items()},
            "env": dict(self._env),
            "before_install": list(self._before_install),
            "install": list(self._install),
            "before_script": list(self._before_script),
            "script": list(self._script),
            "matrix": {
                "include": [dict(r) for r in self._include],
                "exclude": [dict(r) for r in self._exclude],
                "allow_failures": [dict(r) for r in self._allow_failures],
                "fail_fast": self._fail_fast,
            },
        }
        if self._apt_packages:
            config["addons"] = {"apt": {"packages": list(self._apt_packages)}}
            config["sudo"] = self._sudo
        return config

    def build(self) -> MatrixModel:
        return load_config(self.to_config())


def build_matrix() -> MatrixBuilder:
    """Convenience: build_matrix().axis(...).script(...).build()"""
    return MatrixBuilder()
