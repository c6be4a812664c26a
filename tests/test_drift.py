from hypothesis import given
from hypothesis import strategies as st

from foreman.config import DriftConfig
from foreman.drift import (
    SEVERITY_ORDER,
    DriftAssessment,
    DriftPolicy,
    assess_drift,
    normalize_path,
)

POLICY = DriftPolicy.from_config(
    DriftConfig(), state_directory=".foreman", log_path=".foreman/implementation-log.md"
)


def test_expected_files_only_is_none() -> None:
    assessment = assess_drift(["src/app/models.py"], ["./src/app/models.py"], POLICY)

    assert assessment.severity == "none"
    assert assessment.entries == ()
    assert assessment.blocking is False


def test_same_package_file_is_minor() -> None:
    assessment = assess_drift(
        ["src/app/models.py"],
        ["src/app/models.py", "src/app/helpers.py"],
        POLICY,
    )

    assert assessment.severity == "minor"
    assert assessment.yellow_used == 1
    assert assessment.red_used == 0
    assert [entry.category for entry in assessment.entries] == ["yellow"]
    assert assessment.blocking is False


def test_two_unrelated_top_level_files_are_major() -> None:
    assessment = assess_drift(
        ["src/app/models.py"],
        ["src/app/models.py", "setup.py", "Makefile"],
        POLICY,
    )

    assert assessment.severity == "major"
    assert assessment.red_used == 2
    assert {entry.category for entry in assessment.entries} == {"red"}
    assert assessment.blocking is True


def test_single_red_file_is_moderate() -> None:
    assessment = assess_drift(["app/models.py"], ["app/models.py", "lib/util.py"], POLICY)

    assert assessment.severity == "moderate"
    assert assessment.red_used == 1
    assert assessment.blocking is True


def test_sibling_directory_below_root_is_yellow() -> None:
    assessment = assess_drift(["src/app/models.py"], ["src/lib/util.py"], POLICY)

    assert assessment.entries[0].category == "yellow"
    assert assessment.severity == "minor"


def test_documentation_leeway_charges_red_to_yellow_budget() -> None:
    assessment = assess_drift(["src/app/models.py"], ["docs/guide.md"], POLICY)

    entry = assessment.entries[0]
    assert entry.category == "red"
    assert entry.leeway == "config"
    assert entry.cost == 1
    assert entry.charged_to == "yellow"
    assert assessment.red_used == 0
    assert assessment.yellow_used == 1
    assert assessment.severity == "minor"


def test_test_file_next_to_expected_file_is_free() -> None:
    assessment = assess_drift(["src/app/models.py"], ["src/app/test_models.py"], POLICY)

    assert assessment.entries[0].leeway == "test"
    assert assessment.entries[0].cost == 0
    assert assessment.severity == "none"


def test_yellow_budget_thresholds() -> None:
    expected = ["src/app/models.py"]
    three = [f"src/app/extra_{index}.py" for index in range(3)]
    five = [f"src/app/extra_{index}.py" for index in range(5)]

    assert assess_drift(expected, three, POLICY).severity == "moderate"
    assert assess_drift(expected, five, POLICY).severity == "major"


def test_state_directory_and_log_are_ignored() -> None:
    assessment = assess_drift(
        ["src/app/models.py"],
        [".foreman/sessions/s1/session.json", ".foreman/implementation-log.md"],
        POLICY,
    )

    assert assessment.severity == "none"
    assert assessment.actual == (
        ".foreman/implementation-log.md",
        ".foreman/sessions/s1/session.json",
    )


def test_glob_patterns_in_expected_set() -> None:
    assessment = assess_drift(["src/app/*.py"], ["src/app/new_module.py"], POLICY)

    assert assessment.severity == "none"


def test_custom_budgets_change_severity() -> None:
    strict = DriftPolicy(yellow_minor_max=0, yellow_max=0, red_max=1)

    assert assess_drift(["a/b.py"], ["a/c.py"], strict).severity == "major"
    assert assess_drift(["a/b.py"], ["z.py"], strict).severity == "major"


def test_assessment_roundtrip_through_dict() -> None:
    assessment = assess_drift(["src/app/models.py"], ["setup.py", "src/app/x.py"], POLICY)
    restored = DriftAssessment.from_dict(assessment.to_dict())

    assert restored == assessment


def test_normalize_path() -> None:
    assert normalize_path("./src//app/x.py") == "src/app/x.py"
    assert normalize_path("src\\app\\x.py") == "src/app/x.py"
    assert normalize_path("  ") == ""


_paths = st.builds(
    lambda directory, name: f"{directory}{name}",
    st.sampled_from(["", "src/", "src/app/", "src/lib/", "tests/", "docs/", "tools/x/"]),
    st.sampled_from(["a.py", "b.py", "test_c.py", "README.md", "conf.toml", "Makefile"]),
)


@given(
    expected=st.lists(_paths, max_size=4),
    actual=st.lists(_paths, max_size=6),
    extra=st.lists(_paths, min_size=1, max_size=4),
)
def test_adding_files_never_lowers_severity(
    expected: list[str], actual: list[str], extra: list[str]
) -> None:
    before = assess_drift(expected, actual, POLICY)
    after = assess_drift(expected, [*actual, *extra], POLICY)

    assert SEVERITY_ORDER.index(after.severity) >= SEVERITY_ORDER.index(before.severity)
    assert after.yellow_used >= before.yellow_used
    assert after.red_used >= before.red_used


@given(actual=st.lists(_paths, max_size=6), count=st.integers(min_value=1, max_value=4))
def test_adding_red_files_never_lowers_severity(actual: list[str], count: int) -> None:
    expected = ["src/app/a.py"]
    red = [f"unrelated_{index}.bin" for index in range(count)]
    before = assess_drift(expected, actual, POLICY)
    after = assess_drift(expected, [*actual, *red], POLICY)

    assert SEVERITY_ORDER.index(after.severity) >= SEVERITY_ORDER.index(before.severity)
    assert after.red_used == before.red_used + count
