import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from shuffle import attempt_seed, build_question_order, seed_hash, seeded_shuffle  # noqa: E402


def test_seed_hash_matches_running_31_hash():
    assert seed_hash("") == 0
    assert seed_hash("a") == 97
    assert seed_hash("ab") == 97 * 31 + 98


def test_seed_hash_wraps_to_signed_32_bits():
    h = seed_hash("x" * 200)
    assert -2**31 <= h < 2**31


def test_two_items_known_permutation():
    # h=97 -> (97*9301+49297) % 233280 = 18374 -> j = 18374*2 // 233280 = 0
    assert seeded_shuffle([1, 2], "a") == [2, 1]


def test_same_seed_same_order():
    items = list(range(20))
    assert seeded_shuffle(items, "seed-A") == seeded_shuffle(items, "seed-A")


def test_different_seeds_differ():
    items = list(range(10))
    assert seeded_shuffle(items, "seed-A") != seeded_shuffle(items, "seed-B")


def test_result_is_a_permutation_even_for_negative_hashes():
    items = list(range(50))
    seed = "attempt-" + "z" * 64
    assert seed_hash(seed) != 0
    out = seeded_shuffle(items, seed)
    assert sorted(out) == items


def test_empty_and_single_unchanged():
    assert seeded_shuffle([], "s") == []
    assert seeded_shuffle(["only"], "s") == ["only"]


def test_input_not_mutated():
    items = [1, 2, 3, 4, 5]
    seeded_shuffle(items, "abc")
    assert items == [1, 2, 3, 4, 5]


def test_attempt_seed_mixes_enrollment_for_reassignment():
    assert attempt_seed("a1") == "a1"
    assert attempt_seed("a1", "e1") == "a1"
    assert attempt_seed("a1", "e1", is_reassignment=True) == "a1e1"


def _questions(n):
    return [
        {"id": f"q{i}", "order_index": n - i,
         "options": [{"id": f"q{i}o{k}", "text": str(k)} for k in range(4)],
         "correct_option_id": f"q{i}o0"}
        for i in range(n)
    ]


def test_build_order_without_shuffle_follows_order_index():
    order = build_question_order(_questions(4), "seed", shuffle=False)
    assert [o["question_id"] for o in order] == ["q3", "q2", "q1", "q0"]
    assert [o["id"] for o in order[0]["options"]] == ["q3o0", "q3o1", "q3o2", "q3o3"]


def test_build_order_with_shuffle_is_deterministic_and_copies():
    qs = _questions(8)
    a = build_question_order(qs, "attempt-1", shuffle=True)
    b = build_question_order(qs, "attempt-1", shuffle=True)
    assert a == b
    assert sorted(o["question_id"] for o in a) == sorted(q["id"] for q in qs)
    for item in a:
        assert sorted(o["id"] for o in item["options"]) == [f"{item['question_id']}o{k}" for k in range(4)]
        assert "correct_option_id" not in item
    # question rows keep their original option order
    assert [o["id"] for o in qs[0]["options"]] == ["q0o0", "q0o1", "q0o2", "q0o3"]
