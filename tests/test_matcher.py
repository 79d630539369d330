"""Tests for RuleMatcher."""

import pytest

from engagebot.matcher import RuleMatcher
from engagebot.models import AutoReplyRule, MatchType, Sentiment

LOGIN_TEXT = "Having issues with login, can someone help?"


def make_rule(rule_id: str = "r1", sequence: int = 1, **fields) -> AutoReplyRule:
    fields.setdefault("name", rule_id)
    fields.setdefault("response_template", "Hi {{author_username}}")
    return AutoReplyRule(id=rule_id, sequence=sequence, **fields)


class TestRuleMatcher:
    """Test rule evaluation and ordering."""

    def setup_method(self):
        """Set up test fixtures."""
        self.matcher = RuleMatcher()

    def test_any_partial_match_confidence(self):
        """Test one of two keywords matching gives confidence 0.5."""
        rule = make_rule(keywords=["login", "password"], match_type="any", priority=5)
        candidates = self.matcher.match(LOGIN_TEXT, [rule], Sentiment.NEGATIVE)

        assert len(candidates) == 1
        assert candidates[0].confidence == 0.5
        assert candidates[0].matched_keywords == ["login"]

    def test_all_requires_every_term(self):
        """Test an all-rule missing its phrase produces no candidate."""
        rule = make_rule(keywords=["login", "help"], phrases=["need help"], match_type="all")
        assert self.matcher.match(LOGIN_TEXT, [rule], Sentiment.NEGATIVE) == []

    def test_all_full_match_confidence_one(self):
        """Test a qualifying all-match has confidence 1.0."""
        rule = make_rule(keywords=["login", "help"], match_type=MatchType.ALL)
        [candidate] = self.matcher.match(LOGIN_TEXT, [rule])
        assert candidate.confidence == 1.0

    def test_higher_priority_ranked_first(self):
        """Test priority 7 beats priority 3."""
        low = make_rule("low", sequence=1, keywords=["login"], priority=3)
        high = make_rule("high", sequence=2, keywords=["help"], priority=7)
        candidates = self.matcher.match(LOGIN_TEXT, [low, high])
        assert [c.rule.id for c in candidates] == ["high", "low"]

    def test_equal_priority_earliest_created_first(self):
        """Test creation order breaks priority ties regardless of input order."""
        first = make_rule("first", sequence=1, keywords=["login"])
        second = make_rule("second", sequence=2, keywords=["login"])
        third = make_rule("third", sequence=3, keywords=["login"])
        candidates = self.matcher.match(LOGIN_TEXT, [third, first, second])
        assert [c.rule.id for c in candidates] == ["first", "second", "third"]

    @pytest.mark.parametrize("match_type", ["any", "all"])
    @pytest.mark.parametrize("text", ["", "anything", LOGIN_TEXT])
    def test_rule_without_terms_never_matches(self, match_type, text):
        """Test that empty rules are inert."""
        rule = make_rule(keywords=[], phrases=["  ", ""], match_type=match_type)
        assert not self.matcher.evaluate_rule(rule, text).matched

    def test_empty_text_never_matches(self):
        """Test that empty text matches nothing."""
        rule = make_rule(keywords=["login"], phrases=["need help"])
        assert self.matcher.match("", [rule]) == []

    def test_case_insensitive_substring(self):
        """Test matching ignores case and token boundaries."""
        rule = make_rule(keywords=["LOG"], phrases=["Someone Help"])
        [candidate] = self.matcher.match(LOGIN_TEXT, [rule])
        assert candidate.matched_keywords == ["LOG"]
        assert candidate.matched_phrases == ["Someone Help"]
        assert candidate.confidence == 1.0

    def test_no_diacritic_normalization(self):
        """Test accented and plain spellings are distinct."""
        rule = make_rule(keywords=["café"])
        assert self.matcher.match("Best cafe in town", [rule]) == []

    def test_inactive_rules_ignored(self):
        """Test inactive rules never become candidates."""
        rule = make_rule(keywords=["login"], is_active=False)
        assert self.matcher.match(LOGIN_TEXT, [rule]) == []

    def test_sentiment_filter(self):
        """Test sentiment filters restrict candidates."""
        rule = make_rule(keywords=["login"], sentiment_filter={"negative"})
        assert self.matcher.match(LOGIN_TEXT, [rule], Sentiment.NEGATIVE)
        assert self.matcher.match(LOGIN_TEXT, [rule], Sentiment.POSITIVE) == []
        # Unknown sentiment skips the filter
        assert self.matcher.match(LOGIN_TEXT, [rule], None)

    def test_duplicate_terms_counted_once(self):
        """Test normalized terms drive the configured count."""
        rule = make_rule(keywords=["login", "Login ", "password"])
        [candidate] = self.matcher.match(LOGIN_TEXT, [rule])
        assert rule.keywords == ["login", "password"]
        assert candidate.confidence == 0.5

    def test_deterministic(self):
        """Test identical inputs produce identical candidate lists."""
        rules = [
            make_rule("a", sequence=1, keywords=["login"], priority=1),
            make_rule("b", sequence=2, keywords=["help", "issue"], priority=1),
            make_rule("c", sequence=3, phrases=["can someone"], priority=4),
        ]
        first = self.matcher.match(LOGIN_TEXT, rules, Sentiment.NEUTRAL)
        second = self.matcher.match(LOGIN_TEXT, rules, Sentiment.NEUTRAL)
        assert first == second
        assert [c.rule.id for c in first] == ["c", "a", "b"]

    def test_best_match(self):
        """Test best_match returns the head of the list."""
        rules = [make_rule("a", keywords=["login"]), make_rule("b", sequence=2, keywords=["nope"])]
        assert self.matcher.best_match(LOGIN_TEXT, rules).rule.id == "a"
        assert self.matcher.best_match("unrelated", rules) is None
