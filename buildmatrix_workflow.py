# buildmatrix_workflow.py
# Build matrix for a Rust crate: three toolchains, plus rustfmt, clippy,
# bench and coverage jobs.
from __future__ import annotations

from buildmatrix.dsl import build_matrix


def matrix():
    return (
        build_matrix()
        .axis("rust", "stable", "beta", "nightly")
        .script(
            "cargo build --verbose",
            "cargo test  --verbose",
            "cargo doc   --verbose",
        )
        # Format check on stable
        .include(
            rust="stable",
            env={"FMT": "1"},
            before_script="rustup component add rustfmt-preview",
            script="cargo fmt --all -- --check",
        )
        # Lints need the nightly clippy component
        .include(
            rust="nightly",
            env={"CLIPPY": "1"},
            before_script="rustup component add clippy-preview",
            script="cargo clippy",
        )
        .include(
            rust="nightly",
            env={"BENCH": "1"},
            script="cargo bench --verbose",
        )
        # Coverage through kcov; no toolchain axis, runs with whatever is installed
        .include(
            env={"KCOV": "1"},
            sudo=True,
            apt_packages=["libcurl4-openssl-dev", "libelf-dev", "libdw-dev", "binutils-dev", "cmake"],
            before_script=[
                'cargo install cargo-update || echo "cargo-update already installed"',
                'cargo install cargo-travis || echo "cargo-travis already installed"',
                "cargo install-update -a",
            ],
            script=(
                "cargo build    --verbose &&\n"
                "cargo coverage --verbose &&\n"
                "bash <(curl -s https://codecov.io/bash) -s target/kcov"
            ),
        )
        .allow_failure(env={"KCOV": "1"})
        .fail_fast()
    )
