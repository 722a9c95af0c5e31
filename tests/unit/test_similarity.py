"""
Tests for the text similarity scorers.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from newsdedup.dedup.similarity import detailed_similarity, edit_similarity, simple_similarity


@pytest.mark.unit
class TestSimpleSimilarity:
    def test_equal_after_normalization(self):
        assert simple_similarity("Hello world", "hello, WORLD") == 1.0

    def test_jaccard_of_token_sets(self):
        assert simple_similarity("apple banana cherry", "apple banana grape") == pytest.approx(0.5)

    def test_short_tokens_are_ignored(self):
        assert simple_similarity("ab cd", "ab ef") == 0.0

    @pytest.mark.parametrize("a,b", [("", "text"), ("text", ""), (None, "text"), ("", "")])
    def test_empty_input_scores_zero(self, a, b):
        assert simple_similarity(a, b) == 0.0


@pytest.mark.unit
class TestDetailedSimilarity:
    def test_mean_of_jaccard_and_coverage(self):
        score = detailed_similarity(
            "Компания запустила платформу",
            "Компания запустила новую платформу для бизнеса",
        )
        # common 3, union 5, coverage min(3/3, 3/5)
        assert score == pytest.approx((0.6 + 0.6) / 2)

    def test_stop_words_do_not_dilute_the_score(self):
        teaser = "Правительство утвердило бюджет"
        article = "Правительство утвердило бюджет для страны"
        assert simple_similarity(teaser, article) == pytest.approx(0.6)
        assert detailed_similarity(teaser, article) == pytest.approx(0.75)

    def test_quotes_and_dashes_do_not_matter(self):
        assert detailed_similarity("«Газпром» — новые контракты", "Газпром новые контракты") == 1.0

    def test_only_stop_words_scores_zero(self):
        assert detailed_similarity("для как что", "для как что") == 0.0

    def test_empty_input_scores_zero(self):
        assert detailed_similarity("", "something here") == 0.0
        assert detailed_similarity(None, None) == 0.0


@pytest.mark.unit
class TestEditSimilarity:
    def test_both_empty_is_identical(self):
        assert edit_similarity("", "") == 1.0

    def test_one_empty_is_zero(self):
        assert edit_similarity("", "a") == 0.0
        assert edit_similarity("a", "") == 0.0

    def test_identical(self):
        assert edit_similarity("abc", "abc") == 1.0

    def test_case_and_surrounding_whitespace_ignored(self):
        assert edit_similarity("  ABC ", "abc") == 1.0

    def test_levenshtein_ratio(self):
        assert edit_similarity("kitten", "sitting") == pytest.approx(4 / 7)

    def test_none_is_zero(self):
        assert edit_similarity(None, "abc") == 0.0


@pytest.mark.unit
@given(st.text(min_size=1))
def test_simple_similarity_of_text_with_itself_is_one(text):
    assert simple_similarity(text, text) == 1.0


@pytest.mark.unit
@given(st.text(), st.text())
def test_simple_similarity_is_symmetric(a, b):
    assert simple_similarity(a, b) == simple_similarity(b, a)


@pytest.mark.unit
@given(st.text(), st.text())
def test_detailed_similarity_is_symmetric_and_bounded(a, b):
    score = detailed_similarity(a, b)
    assert score == detailed_similarity(b, a)
    assert 0.0 <= score <= 1.0


@pytest.mark.unit
@given(st.text(), st.text())
def test_edit_similarity_is_bounded(a, b):
    assert 0.0 <= edit_similarity(a, b) <= 1.0
