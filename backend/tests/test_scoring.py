"""
Tests for the heuristic answer confidence score.
"""
import pytest

from apps.rag.scoring import ResponseScorer, ScoringWeights


@pytest.fixture
def scorer():
    return ResponseScorer()


class TestResponseScorer:

    def test_baseline(self, scorer):
        assert scorer.score("Yes.") == 0.5

    def test_citation_bonus(self, scorer):
        assert scorer.score("Use the login API [Source 1].") == 0.65

    def test_citation_counts_once(self, scorer):
        assert scorer.score("[Source 1] and [Source 2] and [Source 3]") == 0.65

    def test_code_block_needs_closing_fence(self, scorer):
        assert scorer.score("```js\nlogin();\n```") == 0.6
        assert scorer.score("```js\nlogin();") == 0.5

    def test_length_bonuses(self, scorer):
        assert scorer.score("a" * 201) == 0.55
        assert scorer.score("a" * 501) == 0.6
        assert scorer.score("a" * 200) == 0.5

    def test_structure_bonus(self, scorer):
        assert scorer.score("Steps:\n- open the page") == 0.55
        assert scorer.score("# Setup\nInstall it.") == 0.55

    def test_all_signals(self, scorer):
        answer = (
            "## Configuring SSO\n\n"
            "- Enable SSO in the dashboard [Source 1].\n\n"
            "```javascript\nlr.init();\n```\n\n"
            + "More detail. " * 40
        )

        assert scorer.score(answer) == 0.9

    def test_no_information_caps_score(self, scorer):
        answer = "This information is not available in the current documentation. [Source 1]"

        assert scorer.score(answer) == 0.3

    def test_no_information_with_curly_apostrophe(self, scorer):
        assert scorer.score("I don’t have information about that.") == 0.3

    def test_cap_does_not_raise_low_scores(self):
        scorer = ResponseScorer(ScoringWeights(baseline=0.1))

        assert scorer.score("Not found in the documentation.") == 0.1

    def test_ceiling(self):
        scorer = ResponseScorer(ScoringWeights(baseline=0.95))

        assert scorer.score("See [Source 1].") == 0.98

    def test_never_negative(self):
        scorer = ResponseScorer(ScoringWeights(baseline=-1.0))

        assert scorer.score("x") == 0.0

    def test_deterministic(self, scorer):
        answer = "- item [Source 2]\n```py\nx = 1\n```"
        assert scorer.score(answer) == scorer.score(answer)
