"""Tests for typosquatting and dependency confusion heuristics."""

import pytest

from security.supply_chain import analyze, check_suspicious_name, check_typosquat, levenshtein


@pytest.mark.parametrize(
    "a,b,distance",
    [("", "abc", 3), ("abc", "", 3), ("kitten", "sitting", 3), ("lodash", "lodash", 0), ("lodash", "lodahs", 2)],
)
def test_levenshtein(a, b, distance):
    assert levenshtein(a, b) == distance


class TestTyposquat:

    @pytest.mark.parametrize("name,popular", [("lodahs", "lodash"), ("expres", "express"), ("Reactt", "react")])
    def test_flags_near_misses(self, name, popular):
        finding = check_typosquat(name)

        assert finding is not None
        assert finding.kind == "typosquat"
        assert f"'{popular}'" in finding.detail

    @pytest.mark.parametrize("name", ["lodash", "@types/lodash", "left-pad", "kyy2"])
    def test_ignores(self, name):
        assert check_typosquat(name) is None

    def test_short_names_allow_one_edit(self):
        assert check_typosquat("kx") is not None
        assert check_typosquat("kox") is not None
        assert check_typosquat("xjxx") is None


class TestSuspiciousNames:

    def test_confusion_patterns(self):
        finding = check_suspicious_name("acme-internal-utils")

        assert finding.kind == "dependency_confusion"
        assert "-internal" in finding.message()

    def test_clean_name(self):
        assert check_suspicious_name("left-pad") is None


def test_analyze_collects_all_findings():
    kinds = sorted(f.kind for f in analyze("lodahs-internal"))

    assert kinds == ["dependency_confusion"]
    assert sorted(f.kind for f in analyze("reakt")) == ["typosquat"]
    assert analyze("left-pad") == []
