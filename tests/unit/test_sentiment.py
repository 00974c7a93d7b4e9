"""
Unit tests for the lexicon sentiment scorer and topic extraction.
"""

import pytest

from bella_napoli.tasks.sentiment import LexiconScorer, extract_topics, sentiment_label


class TestLexiconScorer:

    def setup_method(self):
        self.scorer = LexiconScorer()

    def test_all_positive(self):
        assert self.scorer.score("Amazing authentic pizza, best in Chicago!") == 1.0

    def test_all_negative(self):
        assert self.scorer.score("Terrible experience, the pizza arrived cold and soggy.") == -1.0

    def test_mixed(self):
        # great, friendly vs cold
        assert self.scorer.score("Great pizza and friendly staff, but the wings were cold") == pytest.approx(0.3333)

    def test_no_opinion_words(self):
        assert self.scorer.score("We ordered a pizza.") == 0.0

    def test_negated_positive_counts_against(self):
        assert self.scorer.score("The crust was not fresh") == -1.0

    def test_negated_negative_counts_for(self):
        assert self.scorer.score("Delivery was not late") == 1.0

    def test_never_stays_negative(self):
        assert self.scorer.score("I will not never come back") < 0


class TestLabels:

    @pytest.mark.parametrize(
        "score, label",
        [(1.0, "POSITIVE"), (0.3, "POSITIVE"), (0.29, "NEUTRAL"), (0.0, "NEUTRAL"),
         (-0.29, "NEUTRAL"), (-0.3, "NEGATIVE"), (-1.0, "NEGATIVE")],
    )
    def test_thresholds(self, score, label):
        assert sentiment_label(score) == label


class TestTopics:

    def test_topics_in_declared_order(self):
        text = "The driver was late and the crust was soggy, staff were rude"
        assert extract_topics(text) == ["food", "service", "delivery"]

    def test_price_and_wait(self):
        assert extract_topics("Overpriced, and a slow wait") == ["price", "wait_time"]

    def test_no_topics(self):
        assert extract_topics("Okay, nothing special.") == []
