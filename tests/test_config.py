from __future__ import annotations

import json
from pathlib import Path

import pytest

from buildmatrix.config import load_config, load_workflow, parse_env
from buildmatrix.errors import ConfigError
from buildmatrix.expander import expand


REPO_ROOT = Path(__file__).resolve().parents[1]


def test_travis_style_config_expands_to_seven_jobs(rust_travis) -> None:
    model = load_config(rust_travis)
    jobs = expand(model)

    assert model.fail_fast is True
    assert [j.name for j in jobs] == [
        "rust=stable",
        "rust=beta",
        "rust=nightly",
        "rust=stable FMT=1",
        "rust=nightly CLIPPY=1",
        "rust=nightly BENCH=1",
        "KCOV=1",
    ]
    assert [j.allow_failure for j in jobs] == [False] * 6 + [True]

    clippy = jobs[4]
    assert [s.run for s in clippy.script] == ["cargo clippy"]
    assert [s.run for s in clippy.before_script] == ["rustup component add clippy-preview"]

    bench = jobs[5]
    assert [s.run for s in bench.before_script] == []
    assert [s.run for s in bench.script] == ["cargo bench --verbose"]


def test_addons_become_a_sudo_setup_stage(rust_travis) -> None:
    jobs = expand(load_config(rust_travis))
    kcov = jobs[-1]

    assert len(kcov.setup) == 1
    cmd = kcov.setup[0].run
    assert cmd.startswith("sudo apt-get update -qq && sudo apt-get install -y ")
    assert cmd.endswith("libcurl4-openssl-dev libelf-dev libdw-dev binutils-dev cmake")
    # other rows inherit the (empty) global setup
    assert all(j.setup == () for j in jobs[:-1])


def test_global_install_steps_are_inherited(rust_travis) -> None:
    rust_travis["before_install"] = "rustup self update"
    rust_travis["install"] = ["cargo fetch"]
    jobs = expand(load_config(rust_travis))

    assert [s.run for s in jobs[0].setup] == ["rustup self update", "cargo fetch"]
    assert [s.run for s in jobs[-1].setup][1:] == ["rustup self update", "cargo fetch"]


def test_explicit_axes_mapping_coerces_numbers() -> None:
    model = load_config({"axes": {"python": [3.11, "3.12"], "os": "linux"}, "script": "pytest"})
    assert [(a.name, a.values) for a in model.axes] == [("python", ("3.11", "3.12")), ("os", ("linux",))]


def test_language_axis_with_os_axis() -> None:
    model = load_config({"language": "node_js", "node_js": [18, 20], "os": ["linux", "osx"], "script": "npm test"})
    assert model.axis_names == ["node_js", "os"]
    assert len(expand(model)) == 4


def test_jobs_alias_and_fast_finish() -> None:
    model = load_config({
        "language": "rust",
        "rust": "stable",
        "script": "cargo test",
        "jobs": {"fast_finish": True, "include": [{"env": {"KCOV": 1}}]},
    })
    assert model.fail_fast is True
    assert model.includes[0].env == {"KCOV": "1"}


def test_matrix_and_jobs_together_are_rejected() -> None:
    with pytest.raises(ConfigError, match="either 'matrix' or 'jobs'"):
        load_config({"language": "rust", "rust": ["stable"], "script": "x", "matrix": {}, "jobs": {}})


def test_axes_and_language_key_together_are_rejected() -> None:
    with pytest.raises(ConfigError, match="either 'axes' or 'rust'") as exc:
        load_config({"language": "rust", "rust": ["stable"], "axes": {"os": ["linux"]}, "script": "x"})
    assert exc.value.location == "rust"


def test_axes_and_top_level_os_together_are_rejected() -> None:
    with pytest.raises(ConfigError, match="either 'axes' or 'os'"):
        load_config({"axes": {"python": ["3.12"]}, "os": ["linux"], "script": "x"})


def test_non_boolean_fail_fast_is_pinpointed(rust_travis) -> None:
    rust_travis["matrix"]["fail_fast"] = "sometimes"
    with pytest.raises(ConfigError) as exc:
        load_config(rust_travis)
    assert exc.value.location == "matrix.fail_fast"


def test_include_with_unknown_axis_is_pinpointed(rust_travis) -> None:
    rust_travis["matrix"]["include"][1]["python"] = "3.12"
    with pytest.raises(ConfigError) as exc:
        load_config(rust_travis)
    assert exc.value.location == "matrix.include[1]"
    assert "unknown axis 'python'" in exc.value.message


def test_include_informational_keys_are_ignored(rust_travis) -> None:
    rust_travis["matrix"]["include"][0]["dist"] = "xenial"
    jobs = expand(load_config(rust_travis))
    assert jobs[3].axes == {"rust": "stable"}


def test_allow_failures_value_outside_domain(rust_travis) -> None:
    rust_travis["matrix"]["allow_failures"].append({"rust": "1.20.0"})
    with pytest.raises(ConfigError) as exc:
        load_config(rust_travis)
    assert exc.value.location == "matrix.allow_failures[1].rust"


def test_malformed_selector_value(rust_travis) -> None:
    rust_travis["matrix"]["allow_failures"] = [{"rust": ["nightly", "beta"]}]
    with pytest.raises(ConfigError, match="malformed selector value"):
        load_config(rust_travis)


def test_unknown_key_in_matrix_block(rust_travis) -> None:
    rust_travis["matrix"]["exclude_all"] = True
    with pytest.raises(ConfigError) as exc:
        load_config(rust_travis)
    assert exc.value.location == "matrix.exclude_all"


def test_exclude_uses_selector_grammar() -> None:
    model = load_config({
        "axes": {"rust": ["stable", "beta"], "os": ["linux", "osx"]},
        "script": "cargo test",
        "matrix": {"exclude": [{"rust": "beta", "os": "osx"}]},
    })
    assert [j.name for j in expand(model)] == ["rust=stable os=linux", "rust=stable os=osx", "rust=beta os=linux"]


def test_non_mapping_config_is_rejected() -> None:
    with pytest.raises(ConfigError, match="must be a mapping"):
        load_config(["rust"])


def test_bad_stage_list_is_rejected() -> None:
    with pytest.raises(ConfigError) as exc:
        load_config({"axes": {"rust": ["stable"]}, "script": [{"run": "cargo test"}]})
    assert exc.value.location == "script[0]"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("KCOV=1", {"KCOV": "1"}),
        ("A=1 B='two words'", {"A": "1", "B": "two words"}),
        (["A=1", {"B": 2}], {"A": "1", "B": "2"}),
        ({"EMPTY": None}, {"EMPTY": ""}),
        (None, {}),
    ],
)
def test_parse_env_forms(value, expected) -> None:
    assert parse_env(value, "env") == expected


def test_parse_env_rejects_bare_words() -> None:
    with pytest.raises(ConfigError) as exc:
        parse_env("KCOV", "matrix.include[3].env")
    assert exc.value.location == "matrix.include[3].env"


def test_load_workflow_json(tmp_path: Path, rust_travis) -> None:
    path = tmp_path / "buildmatrix.json"
    path.write_text(json.dumps(rust_travis), encoding="utf-8")
    assert len(expand(load_workflow(path))) == 7


def test_load_workflow_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{\"script\": [", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid JSON"):
        load_workflow(path)


def test_load_workflow_python_constant(tmp_path: Path) -> None:
    path = tmp_path / "ci_workflow.py"
    path.write_text(
        "MATRIX = {'axes': {'py': ['3.11', '3.12']}, 'script': ['pytest -q']}\n",
        encoding="utf-8",
    )
    assert len(expand(load_workflow(path))) == 2


def test_load_workflow_python_without_matrix(tmp_path: Path) -> None:
    path = tmp_path / "empty_workflow.py"
    path.write_text("JOBS = []\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="neither matrix\\(\\) nor MATRIX"):
        load_workflow(path)


def test_load_workflow_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.json")


def test_repository_workflow_matches_travis_config(rust_travis) -> None:
    from_file = expand(load_workflow(REPO_ROOT / "buildmatrix_workflow.py"))
    from_dict = expand(load_config(rust_travis))

    assert [j.name for j in from_file] == [j.name for j in from_dict]
    assert [j.allow_failure for j in from_file] == [j.allow_failure for j in from_dict]
    assert [[s.run for s in j.stages] for j in from_file][:6] == [[s.run for s in j.stages] for j in from_dict][:6]
