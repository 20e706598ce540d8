import copy

from utils.content import extract_page_content
from utils.scoring import calculate_scores, round_half_up
from conftest import page_html


def test_page_missing_title_and_description():
    html = page_html(title=None, description=None, h1="Welcome", words=250, links=())
    result = calculate_scores(extract_page_content(html))

    assert result.issues == [
        "Missing Title Tag",
        "Missing Meta Description",
        "Thin content (< 300 words)",
        "No internal links found",
    ]
    assert result.technical_score == 70
    assert result.content_score == 70
    assert result.seo_score == 70


def test_well_formed_page_scores_full_marks():
    html = page_html(title="x" * 40, description="Good description", h1="Welcome",
                     words=1000, links=("/a", "/b", "/c"))
    result = calculate_scores(extract_page_content(html))

    assert result.issues == []
    assert result.technical_score == 100
    assert result.content_score == 100
    assert result.seo_score == 100


def test_title_length_penalty():
    short = calculate_scores({"title": "Too short", "description": "d", "h1": "h",
                              "word_count": 500, "links": {"internal": 1}})
    long = calculate_scores({"title": "y" * 71, "description": "d", "h1": "h",
                             "word_count": 500, "links": {"internal": 1}})
    for result in (short, long):
        assert result.issues == ["Title length suboptimal"]
        assert result.technical_score == 95


def test_empty_page_and_rounding():
    result = calculate_scores({})
    assert result.technical_score == 70
    assert result.content_score == 50
    assert result.seo_score == 60

    # (95 + 70) / 2 = 82.5 rounds up
    result = calculate_scores({"title": "short", "description": "d", "h1": "h", "word_count": 10,
                               "links": {"internal": 0}})
    assert result.technical_score == 95
    assert result.content_score == 70
    assert result.seo_score == 83


def test_scores_are_pure_and_bounded():
    facts = {"title": "A reasonable title", "description": "", "h1": "",
             "word_count": 299, "links": {"internal": 0, "external": 2, "total": 2}}
    snapshot = copy.deepcopy(facts)

    first = calculate_scores(facts)
    second = calculate_scores(facts)

    assert first == second
    assert facts == snapshot
    for score in (first.technical_score, first.content_score, first.seo_score):
        assert 0 <= score <= 100


def test_round_half_up():
    assert round_half_up(82.5) == 83
    assert round_half_up(82.4) == 82
    assert round_half_up(60) == 60
