"""
Unit tests for `learnflow/core/classifier.py` – QueryClassifier behavior in isolation.

The classifier is pure signal matching, so no collaborator needs to be mocked: each test builds
a `Query` and checks the selected `QueryType`, the precedence rule applied when several signals
are present, the ambiguity path (no type clears the threshold) and topic extraction.
"""

import unittest

from learnflow.core.classifier import QueryClassifier, extract_topic
from learnflow.core.exceptions import ClassificationAmbiguous
from learnflow.shared.models import Query, QueryType


def _query(text, code=None, language=None):
    return Query(id="q-1", session_id="s-1", text=text, code=code, language=language)


class TestQueryClassifier(unittest.TestCase):
    """
    Unit tests for the `QueryClassifier` class with the default threshold (0.5).
    """

    def setUp(self):
        self.classifier = QueryClassifier(threshold=0.5)

    def test_code_payload_wins_over_visual_phrasing(self):
        result = self.classifier.classify(_query("Draw a diagram of what this does", code="x = 1", language="python"))
        self.assertEqual(result.query_type, QueryType.CODE_ANALYSIS)
        # Both signals were scored; precedence picked code
        self.assertIn(QueryType.VISUAL_REQUEST, result.scores)

    def test_fenced_code_in_text_is_code_analysis(self):
        text = "Why does this loop never stop?\n```python\nwhile True:\n    pass\n```"
        result = self.classifier.classify(_query(text))
        self.assertEqual(result.query_type, QueryType.CODE_ANALYSIS)
        self.assertEqual(result.confidence, 1.0)

    def test_visual_request_extracts_topic(self):
        result = self.classifier.classify(_query("Draw a diagram of the binary search tree"))
        self.assertEqual(result.query_type, QueryType.VISUAL_REQUEST)
        self.assertEqual(result.topic, "binary search tree")

    def test_quiz_structure_is_gap_assessment(self):
        result = self.classifier.classify(_query("Q: What does len([]) return?\nA: 1"))
        self.assertEqual(result.query_type, QueryType.GAP_ASSESSMENT)

    def test_self_check_is_gap_assessment(self):
        text = "Check my understanding: a closure keeps variables from its enclosing scope"
        result = self.classifier.classify(_query(text))
        self.assertEqual(result.query_type, QueryType.GAP_ASSESSMENT)

    def test_concept_question(self):
        result = self.classifier.classify(_query("explain recursion"))
        self.assertEqual(result.query_type, QueryType.CONCEPT_QUESTION)
        self.assertEqual(result.topic, "recursion")

    def test_what_is_question_drops_article_from_topic(self):
        result = self.classifier.classify(_query("What is a closure?"))
        self.assertEqual(result.query_type, QueryType.CONCEPT_QUESTION)
        self.assertEqual(result.topic, "closure")

    def test_other_questions_are_general(self):
        result = self.classifier.classify(_query("How should I structure my project?"))
        self.assertEqual(result.query_type, QueryType.GENERAL_QUESTION)
        self.assertIsNone(result.topic)

    def test_fragment_is_ambiguous(self):
        with self.assertRaises(ClassificationAmbiguous) as ctx:
            self.classifier.classify(_query("hi"))
        self.assertEqual(ctx.exception.scores, {"general_question": 0.3})

    def test_classification_is_deterministic(self):
        query = _query("Explain how a hash map handles collisions")
        types = {self.classifier.classify(query).query_type for _ in range(5)}
        self.assertEqual(types, {QueryType.CONCEPT_QUESTION})

    def test_threshold_is_configurable(self):
        strict = QueryClassifier(threshold=0.95)
        with self.assertRaises(ClassificationAmbiguous):
            strict.classify(_query("explain recursion"))

        lenient = QueryClassifier(threshold=0.3)
        self.assertEqual(lenient.classify(_query("hi")).query_type, QueryType.GENERAL_QUESTION)


class TestExtractTopic(unittest.TestCase):

    def test_examples(self):
        self.assertEqual(extract_topic("Explain recursion"), "recursion")
        self.assertEqual(extract_topic("How does garbage collection work?"), "garbage collection")
        self.assertEqual(extract_topic("Visualize a linked list"), "linked list")
        self.assertIsNone(extract_topic("hello"))
        self.assertIsNone(extract_topic(""))


if __name__ == "__main__":
    unittest.main()
