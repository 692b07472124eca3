import io

import pytest

from erofskit.config import Config, ErofsError
from erofskit.exclude import ExcludeRules


def _rules(root=None):
    cfg = Config(stdout=io.StringIO(), stderr=io.StringIO())
    if root is not None:
        cfg.set_fs_root(root)
    return ExcludeRules(cfg)


def test_exact_match():
    r = _rules()
    rule = r.add("etc/passwd")
    assert r.match("etc", "passwd") is rule
    assert r.match("etc", "group") is None


def test_match_without_directory():
    r = _rules()
    rule = r.add("README")
    assert r.match(None, "README") is rule


def test_regex_search_anywhere():
    r = _rules()
    rule = r.add(r"\.tmp$", is_regex=True)
    assert r.match("var/cache", "x.tmp") is rule
    assert r.match("var/cache", "x.tmpl") is None


def test_exact_rules_checked_before_regex():
    r = _rules()
    regex_rule = r.add("lib", is_regex=True)
    exact_rule = r.add("usr/lib")
    assert r.match("usr", "lib") is exact_rule
    assert r.match("opt", "lib") is regex_rule


def test_fs_root_stripped():
    r = _rules(root="/build/root")
    rule = r.add("data/file")
    assert r.match("/build/root/data", "file") is rule


def test_invalid_regex_raises_and_clears():
    r = _rules()
    r.add("keep")
    with pytest.raises(ErofsError):
        r.add("(unclosed", is_regex=True)
    assert r.match(None, "keep") is None
    assert "invalid regex" in r.config.stderr.getvalue()


def test_clear():
    r = _rules()
    r.add("a")
    r.add("b", is_regex=True)
    r.clear()
    assert r.match(None, "a") is None
    assert r.match(None, "b") is None


def test_add_returns_rule_with_pattern():
    r = _rules()
    rule = r.add("x.*", is_regex=True)
    assert rule.pattern == "x.*"
    assert rule.regex.search("xyz")