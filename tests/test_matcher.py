"""Tests for routing rule matching."""

import itertools

import pytest
from pydantic import ValidationError

from mesh_router.routing import RoutingRule, RuleMatcher


def rule(match, version=None, name=None):
    data = {"match": match}
    if version is not None:
        data["version"] = version
    if name is not None:
        data["name"] = name
    return RoutingRule.model_validate(data)


HEADER_V2 = rule({"type": "header", "name": "version", "value": "v2"}, "v2", "header-v2")
HEADER_V1 = rule({"type": "header", "name": "version", "value": "v1"}, "v1", "header-v1")
PATH_V2 = rule({"type": "path_prefix", "prefix": "/v2"}, "v2", "path-v2")
PATH_BETA = rule({"type": "path_prefix", "prefix": "/beta"}, "v2", "path-beta")


class TestRuleMatcher:
    """Rule evaluation order and predicates."""

    def test_header_rule_matches(self):
        matcher = RuleMatcher([HEADER_V2, HEADER_V1])

        assert matcher.match({"version": "v2"}, "/") == "v2"
        assert matcher.match({"version": "v1"}, "/") == "v1"

    def test_header_match_is_case_insensitive(self):
        matcher = RuleMatcher([HEADER_V2])

        assert matcher.match({"Version": "V2"}, "/") == "v2"
        assert matcher.match({"VERSION": "v2"}, "/") == "v2"

    def test_header_value_must_be_equal(self):
        matcher = RuleMatcher([HEADER_V2])

        assert matcher.match({"version": "v20"}, "/") is None
        assert matcher.match({"version": " v2 "}, "/") is None
        assert matcher.match({"other": "v2"}, "/") is None

    def test_path_prefix_rules(self):
        matcher = RuleMatcher([PATH_V2, PATH_BETA])

        assert matcher.match({}, "/v2") == "v2"
        assert matcher.match({}, "/beta/features") == "v2"
        assert matcher.match({}, "/") is None

    def test_longest_prefix_wins(self):
        short = rule({"type": "path_prefix", "prefix": "/api"}, "v1", "api")
        long = rule({"type": "path_prefix", "prefix": "/api/v2"}, "v2", "api-v2")

        for rules in ([short, long], [long, short]):
            matcher = RuleMatcher(rules)
            assert matcher.match({}, "/api/v2/users") == "v2"
            assert matcher.match({}, "/api/users") == "v1"

    def test_header_rules_beat_path_rules(self):
        matcher = RuleMatcher([PATH_V2, HEADER_V1])

        assert matcher.match({"version": "v1"}, "/v2/page") == "v1"
        assert [r.kind for r in matcher.rules] == ["header", "path_prefix"]

    def test_unmatched_request_defers_to_split(self):
        matcher = RuleMatcher([HEADER_V2, PATH_V2])

        assert matcher.match({"accept": "text/html"}, "/index.html") is None
        assert matcher.match_rule({}, "/index.html") is None

    def test_default_rule_with_version_pins(self):
        default = rule({"type": "default"}, "v1", "everything-else")
        matcher = RuleMatcher([default, PATH_V2])

        assert matcher.match({}, "/v2") == "v2"
        assert matcher.match({}, "/other") == "v1"

    def test_default_rule_without_version_defers(self):
        default = rule({"type": "default"}, name="split")
        matcher = RuleMatcher([default])

        matched = matcher.match_rule({}, "/anything")
        assert matched is not None
        assert matched.rule.label == "split"
        assert matched.version is None
        assert matcher.match({}, "/anything") is None

    def test_result_independent_of_declaration_order(self):
        rules = [HEADER_V2, HEADER_V1, PATH_V2, PATH_BETA]
        requests = [
            ({"version": "v1"}, "/beta"),
            ({"version": "v2"}, "/"),
            ({}, "/v2/x"),
            ({}, "/beta"),
            ({}, "/"),
        ]
        expected = [RuleMatcher(rules).match(headers, path) for headers, path in requests]

        for permutation in itertools.permutations(rules):
            matcher = RuleMatcher(list(permutation))
            assert [matcher.match(h, p) for h, p in requests] == expected


class TestRoutingRuleModel:
    def test_non_default_rule_requires_version(self):
        with pytest.raises(ValidationError):
            rule({"type": "header", "name": "version", "value": "v2"})

    def test_path_prefix_must_be_absolute(self):
        with pytest.raises(ValidationError):
            rule({"type": "path_prefix", "prefix": "v2"}, "v2")

    def test_unknown_rule_type_rejected(self):
        with pytest.raises(ValidationError):
            rule({"type": "cookie", "name": "beta"}, "v2")

    def test_label_falls_back_to_kind(self):
        assert rule({"type": "path_prefix", "prefix": "/v2"}, "v2").label == "path_prefix->v2"
