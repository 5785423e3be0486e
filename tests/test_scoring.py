import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scoring import grade_answers, normalize_answers, passed, score  # noqa: E402

QUESTIONS = [{"id": f"q{i}", "correct_option_id": f"q{i}-a"} for i in range(3)]


def test_unanswered_count_as_incorrect():
    out = score([{"question_id": "q0", "selected_option_id": "q0-a"}], QUESTIONS)
    assert out == {"correct_count": 1, "total": 3, "percentage": 33}


def test_percentage_rounds_half_up():
    assert score([{"question_id": f"q{i}", "selected_option_id": f"q{i}-a"} for i in range(2)],
                 QUESTIONS)["percentage"] == 67
    eight = [{"id": f"q{i}", "correct_option_id": "a"} for i in range(8)]
    assert score([{"question_id": "q0", "selected_option_id": "a"}], eight)["percentage"] == 13


def test_no_questions_scores_zero():
    assert score([], []) == {"correct_count": 0, "total": 0, "percentage": 0}


def test_unknown_questions_are_ignored():
    graded = grade_answers([{"question_id": "zz", "selected_option_id": "x"},
                            {"question_id": "q1", "selected_option_id": "wrong"}], QUESTIONS)
    assert [(r["question_id"], r["is_correct"]) for r in graded] == [("q1", False)]


def test_normalize_tolerates_camel_case_and_last_answer_wins():
    out = normalize_answers([
        {"questionId": "q1", "selectedOptionId": "x", "timeSpent": 4, "markedForReview": True},
        {"question_id": "q1", "selected_option_id": "y"},
        {"selected_option_id": "orphan"},
        "garbage",
    ])
    assert out == [{"question_id": "q1", "selected_option_id": "y",
                    "time_spent": 0, "marked_for_review": False}]


def test_normalize_mapping_input():
    out = normalize_answers({"q0": "q0-a", "q2": ""})
    assert {a["question_id"]: a["selected_option_id"] for a in out} == {"q0": "q0-a", "q2": None}


def test_passed_threshold():
    assert passed(70)
    assert not passed(69.9)
    assert not passed(None)
    assert passed(50, threshold=50)
