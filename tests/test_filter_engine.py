import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.fspath(Path(__file__).resolve().parent.parent))

from filetypes import FileType
from filter_engine import (
    REASON_EXCLUDED,
    REASON_HIDDEN,
    REASON_NOT_INCLUDED,
    FilterEngine,
    file_extension,
    is_hidden,
    normalize_path,
)
from rules import NO_PATTERN, CompiledRule, FilterRule, MatchType, OverlapPolicy


def _engine(tmp_path, **filter_opts):
    return FilterEngine(filter_opts, repository_root=tmp_path)


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    return path


@pytest.mark.parametrize(
    "policy,include_enabled,include_match,exclude_match,expected",
    [
        (OverlapPolicy.EXCLUDE_OVERRIDES, True, True, True, False),
        (OverlapPolicy.EXCLUDE_OVERRIDES, True, True, False, True),
        (OverlapPolicy.EXCLUDE_OVERRIDES, True, False, False, False),
        (OverlapPolicy.EXCLUDE_OVERRIDES, False, False, False, True),
        (OverlapPolicy.EXCLUDE_OVERRIDES, False, True, True, False),
        (OverlapPolicy.INCLUDE_OVERRIDES, True, True, True, True),
        (OverlapPolicy.INCLUDE_OVERRIDES, True, False, False, True),
        (OverlapPolicy.INCLUDE_OVERRIDES, True, False, True, False),
        (OverlapPolicy.INCLUDE_OVERRIDES, False, True, True, False),
        (OverlapPolicy.INCLUDE_OVERRIDES, False, False, False, True),
    ],
)
def test_resolve_verdict_truth_table(policy, include_enabled, include_match, exclude_match, expected):
    engine = FilterEngine({'overlap_policy': policy})
    assert engine.resolve_verdict(include_match, exclude_match, include_enabled) is expected


def test_no_rules_include_everything_visible(tmp_path):
    file_path = _touch(tmp_path / "src" / "main.c")
    engine = _engine(tmp_path)
    assert engine.should_include(file_path) == (True, None)


def test_include_rules_report_unmatched_files(tmp_path):
    py_file = _touch(tmp_path / "a.py")
    txt_file = _touch(tmp_path / "a.txt")
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'extension', 'pattern': 'py'}],
    )

    assert engine.should_include(py_file) == (True, None)
    assert engine.should_include(txt_file) == (False, REASON_NOT_INCLUDED)


def test_disabled_include_rules_are_ignored(tmp_path):
    txt_file = _touch(tmp_path / "a.txt")
    engine = _engine(
        tmp_path,
        use_include_rules=False,
        include_rules=[{'type': 'extension', 'pattern': 'py'}],
    )
    assert engine.should_include(txt_file) == (True, None)


@pytest.mark.parametrize(
    "policy,expected",
    [
        ('exclude_overrides', (False, REASON_EXCLUDED)),
        ('include_overrides', (True, None)),
    ],
)
def test_overlap_policy_decides_conflicts(tmp_path, policy, expected):
    test_file = _touch(tmp_path / "src" / "test_core.py")
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        use_exclude_rules=True,
        overlap_policy=policy,
        include_rules=[{'type': 'extension', 'pattern': 'py'}],
        exclude_rules=[{'type': 'glob', 'pattern': '**/test_*.py'}],
    )
    assert engine.should_include(test_file) == expected


def test_hidden_files_are_skipped_before_rules(tmp_path):
    env_file = _touch(tmp_path / ".env")
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'extension', 'pattern': 'env'}],
    )
    assert engine.should_include(env_file) == (False, REASON_HIDDEN)


def test_hidden_files_can_be_matched(tmp_path):
    env_file = _touch(tmp_path / ".env")
    engine = _engine(
        tmp_path,
        match_hidden_files=True,
        use_include_rules=True,
        include_rules=[{'type': 'extension', 'pattern': 'env'}],
    )
    assert engine.should_include(env_file) == (True, None)


def test_failing_hidden_check_counts_as_visible(tmp_path):
    file_path = _touch(tmp_path / "a.txt")

    def broken_check(path):
        raise OSError("attributes unavailable")

    engine = FilterEngine({}, repository_root=tmp_path, hidden_check=broken_check)
    assert engine.should_include(file_path) == (True, None)


def test_glob_is_anchored_but_regex_is_not(tmp_path):
    nested = _touch(tmp_path / "src" / "app.ts")
    top_level = _touch(tmp_path / "app.ts")

    glob_engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'glob', 'pattern': '*.ts'}],
    )
    regex_engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'regex', 'pattern': r'\.ts$'}],
    )

    assert glob_engine.should_include(top_level)[0] is True
    assert glob_engine.should_include(nested)[0] is False
    assert regex_engine.should_include(top_level)[0] is True
    assert regex_engine.should_include(nested)[0] is True


@pytest.mark.parametrize(
    "case_sensitive,expected",
    [(False, True), (True, False)],
)
def test_extension_case_sensitivity(tmp_path, case_sensitive, expected):
    file_path = _touch(tmp_path / "Main.JAVA")
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[
            {'type': 'extension', 'pattern': '.java', 'case_sensitive': case_sensitive}
        ],
    )
    assert engine.should_include(file_path)[0] is expected


def test_path_contains_matches_relative_path(tmp_path):
    built = _touch(tmp_path / "app" / "build" / "out.js")
    source = _touch(tmp_path / "app" / "src" / "build.js")
    engine = _engine(
        tmp_path,
        use_exclude_rules=True,
        exclude_rules=[{'type': 'path_contains', 'pattern': '/BUILD/'}],
    )

    assert engine.should_include(built) == (False, REASON_EXCLUDED)
    assert engine.should_include(source) == (True, None)


def test_path_contains_is_a_plain_substring_test(tmp_path):
    top_level = _touch(tmp_path / "build" / "x.js")
    build_dir = tmp_path / "app" / "build"
    build_dir.mkdir(parents=True)
    engine = _engine(
        tmp_path,
        use_exclude_rules=True,
        exclude_rules=[
            {'type': 'path_contains', 'pattern': '/build/', 'apply_to_directories': True}
        ],
    )

    # "build/x.js" and "app/build" do not contain "/build/".
    assert engine.should_include(top_level) == (True, None)
    assert engine.should_enter_directory(build_dir) is True
    assert engine.should_enter_directory(tmp_path / "build") is True


def test_uncompiled_path_contains_rule_still_matches(tmp_path):
    file_path = _touch(tmp_path / "vendor" / "lib.js")
    rule = FilterRule(type=MatchType.PATH_CONTAINS, pattern="VENDOR/")
    engine = _engine(tmp_path)
    rel_path = engine.normalize_path(file_path)

    assert engine.matches(
        CompiledRule(rule, NO_PATTERN), file_path, rel_path, rel_path.lower(), False
    ) is True
    assert engine.matches(
        CompiledRule(rule, NO_PATTERN), file_path, "src/lib.js", "src/lib.js", False
    ) is False


@pytest.mark.parametrize("relative", [".", ".."])
def test_dot_directories_are_not_hidden(tmp_path, monkeypatch, relative):
    work = tmp_path / "sub"
    work.mkdir()
    monkeypatch.chdir(work)

    assert is_hidden(Path(relative)) is False
    assert is_hidden(Path(".env")) is True


def test_filetype_rules_use_classifier(tmp_path):
    kotlin = _touch(tmp_path / "Main.kt")
    script = _touch(tmp_path / "build.gradle.kts")
    other = _touch(tmp_path / "notes.txt")
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'filetype_id', 'pattern': 'kotlin'}],
    )

    assert engine.should_include(kotlin)[0] is True
    assert engine.should_include(script)[0] is True
    assert engine.should_include(other)[0] is False


def test_verdicts_are_cached_per_engine(tmp_path):
    file_path = _touch(tmp_path / "Main.kt")
    calls = []

    def classify(path):
        calls.append(path)
        return FileType("Kotlin", False)

    engine = FilterEngine(
        {
            'use_include_rules': True,
            'include_rules': [{'type': 'filetype_id', 'pattern': 'Kotlin'}],
        },
        repository_root=tmp_path,
        classify=classify,
    )

    assert engine.should_include(file_path) == (True, None)
    assert engine.should_include(tmp_path / "." / "Main.kt") == (True, None)
    assert len(calls) == 1

    fresh = FilterEngine(
        {
            'use_include_rules': True,
            'include_rules': [{'type': 'filetype_id', 'pattern': 'Kotlin'}],
        },
        repository_root=tmp_path,
        classify=classify,
    )
    fresh.should_include(file_path)
    assert len(calls) == 2


def test_should_enter_directory_applies_directory_rules(tmp_path):
    vendor = tmp_path / "vendor"
    vendor.mkdir()
    src = tmp_path / "src"
    src.mkdir()
    engine = _engine(
        tmp_path,
        use_exclude_rules=True,
        exclude_rules=[
            {'type': 'glob', 'pattern': 'vendor', 'apply_to_directories': True},
            {'type': 'glob', 'pattern': 'src'},
        ],
    )

    assert engine.should_enter_directory(vendor) is False
    # Rules without apply_to_directories never gate traversal.
    assert engine.should_enter_directory(src) is True


def test_directory_gate_can_be_disabled(tmp_path):
    vendor = tmp_path / "vendor"
    vendor.mkdir()
    engine = _engine(
        tmp_path,
        match_directories=False,
        use_exclude_rules=True,
        exclude_rules=[{'type': 'glob', 'pattern': 'vendor', 'apply_to_directories': True}],
    )
    assert engine.should_enter_directory(vendor) is True


def test_file_include_rules_do_not_close_directories(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'extension', 'pattern': 'py'}],
    )
    assert engine.should_enter_directory(src) is True


def test_directory_include_rules_restrict_traversal(tmp_path):
    src = tmp_path / "src"
    docs = tmp_path / "docs"
    src.mkdir()
    docs.mkdir()
    engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[
            {'type': 'regex', 'pattern': '^src', 'apply_to_directories': True},
        ],
    )
    assert engine.should_enter_directory(src) is True
    assert engine.should_enter_directory(docs) is False


def test_hidden_directories_are_closed_when_include_rules_apply(tmp_path):
    hidden = tmp_path / ".cache"
    hidden.mkdir()
    open_engine = _engine(tmp_path)
    include_engine = _engine(
        tmp_path,
        use_include_rules=True,
        include_rules=[{'type': 'glob', 'pattern': '**', 'apply_to_directories': True}],
    )

    assert open_engine.should_enter_directory(hidden) is True
    assert include_engine.should_enter_directory(hidden) is False


def test_normalize_path(tmp_path):
    nested = tmp_path / "a" / "b.txt"
    assert normalize_path(nested, tmp_path) == "a/b.txt"
    assert normalize_path(tmp_path, tmp_path) == ""
    outside = tmp_path.parent / "elsewhere.txt"
    assert normalize_path(outside, tmp_path) == Path(os.path.abspath(outside)).as_posix()
    assert normalize_path(nested) == Path(os.path.abspath(nested)).as_posix()


@pytest.mark.parametrize(
    "name,expected",
    [
        ("main.py", "py"),
        ("archive.tar.gz", "gz"),
        (".env", "env"),
        ("Makefile", ""),
    ],
)
def test_file_extension(name, expected):
    assert file_extension(name) == expected
