# shuffle.py
# -----------------------------------------------------------------------------
# Seeded, deterministic shuffling for per-attempt question/option order.
# - Same (items, seed) -> same order, on every host and every run
# - No wall clock, no os.urandom, no set/dict iteration order
# - Only the realized order is persisted; the seed is stored for audit
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Optional, Sequence, TypeVar

T = TypeVar("T")

# Linear-congruential step (classic 9301/49297/233280 generator)
_LCG_MUL = 9301
_LCG_INC = 49297
_LCG_MOD = 233280


def _to_int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def seed_hash(seed: str) -> int:
    """32-bit signed running hash of the seed string (h = h*31 + ch)."""
    h = 0
    for ch in str(seed or ""):
        h = _to_int32((h << 5) - h + ord(ch))
    return h


def seeded_shuffle(items: Sequence[T], seed: str) -> List[T]:
    """
    Fisher-Yates over a copy of `items`; each swap index comes from one LCG
    step of the running hash. Empty and single-element input come back as-is.
    """
    arr = list(items)
    if len(arr) < 2:
        return arr
    h = seed_hash(seed)
    for i in range(len(arr) - 1, 0, -1):
        h = (h * _LCG_MUL + _LCG_INC) % _LCG_MOD
        j = (h * (i + 1)) // _LCG_MOD
        arr[i], arr[j] = arr[j], arr[i]
    return arr


def attempt_seed(attempt_id: str, enrollment_id: Optional[str] = None,
                 is_reassignment: bool = False) -> str:
    """Reassigned attempts mix in the enrollment id so they never replay the original order."""
    if is_reassignment and enrollment_id:
        return f"{attempt_id}{enrollment_id}"
    return str(attempt_id)


def _option_list(question: Dict[str, Any]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for o in (question.get("options") or []):
        if isinstance(o, dict):
            out.append({"id": str(o.get("id")), "text": o.get("text") or ""})
    return out


def build_question_order(questions: Sequence[Dict[str, Any]], seed: str,
                         shuffle: bool) -> List[Dict[str, Any]]:
    """
    Returns the realized order stored on the attempt:
        [{"question_id": ..., "options": [{"id", "text"}, ...]}, ...]
    Options are copied, never the question rows themselves.
    """
    ordered = sorted(questions, key=lambda q: (q.get("order_index") or 0, str(q.get("id"))))
    if shuffle:
        ordered = seeded_shuffle(ordered, seed)
    order: List[Dict[str, Any]] = []
    for q in ordered:
        qid = str(q.get("id"))
        options = _option_list(q)
        if shuffle:
            options = seeded_shuffle(options, f"{seed}:{qid}")
        order.append({"question_id": qid, "options": options})
    return order
