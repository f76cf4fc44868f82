from __future__ import annotations

import threading
import time
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from buildmatrix.model import JobSpec, Phase, Stage, StepOutcome, StepStatus
from buildmatrix.runner import CancelToken


class ScriptedExecutor:
    """Stage executor that fails on chosen commands and records every call."""

    def __init__(
        self,
        failing: Sequence[str] = (),
        delays: Optional[Mapping[str, float]] = None,
    ):
        self.failing = set(failing)
        self.delays = dict(delays or {})
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def commands(self) -> List[str]:
        return [cmd for cmd, _env in self.calls]

    def execute(self, stage: Stage, env: Mapping[str, str], cancel: CancelToken) -> StepOutcome:
        with self._lock:
            self.calls.append((stage.run, dict(env)))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(stage.run, 0.0)
            if delay:
                time.sleep(delay)
            status = StepStatus.FAILURE if stage.run in self.failing else StepStatus.SUCCESS
            return StepOutcome(
                stage=stage,
                status=status,
                output=f"ran {stage.run}\n",
                exit_code=1 if status is StepStatus.FAILURE else 0,
            )
        finally:
            with self._lock:
                self.active -= 1


def make_job(number: int, *script: str, allow_failure: bool = False, setup: Sequence[str] = ()) -> JobSpec:
    script = script or (f"job{number}",)
    return JobSpec(
        number=number,
        name=f"job{number}",
        axes={},
        env={"JOB": str(number)},
        setup=tuple(Stage(Phase.SETUP, cmd) for cmd in setup),
        before_script=(),
        script=tuple(Stage(Phase.SCRIPT, cmd) for cmd in script),
        allow_failure=allow_failure,
    )


# Shape of the original Travis configuration this engine targets.
RUST_TRAVIS = {
    "language": "rust",
    "cache": "cargo",
    "rust": ["stable", "beta", "nightly"],
    "script": [
        "cargo build --verbose",
        "cargo test  --verbose",
        "cargo doc   --verbose",
    ],
    "matrix": {
        "fast_failures": True,
        "allow_failures": [{"env": "KCOV=1"}],
        "include": [
            {
                "rust": "stable",
                "env": "FMT=1",
                "before_script": ["rustup component add rustfmt-preview"],
                "script": ["cargo fmt --all -- --check"],
            },
            {
                "rust": "nightly",
                "env": "CLIPPY=1",
                "before_script": ["rustup component add clippy-preview"],
                "script": ["cargo clippy"],
            },
            {
                "rust": "nightly",
                "env": "BENCH=1",
                "script": ["cargo bench --verbose"],
            },
            {
                "env": "KCOV=1",
                "sudo": "required",
                "before_script": [
                    'cargo install cargo-update || echo "cargo-update already installed"',
                    'cargo install cargo-travis || echo "cargo-travis already installed"',
                    "cargo install-update -a",
                ],
                "script": [
                    "cargo build    --verbose &&\ncargo coverage --verbose &&\n"
                    "bash <(curl -s https://codecov.io/bash) -s target/kcov\n"
                ],
                "addons": {
                    "apt": {
                        "packages": [
                            "libcurl4-openssl-dev",
                            "libelf-dev",
                            "libdw-dev",
                            "binutils-dev",
                            "cmake",
                        ]
                    }
                },
            },
        ],
    },
}


