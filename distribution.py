# distribution.py
# -----------------------------------------------------------------------------
# Per-type question sub-selection: {type: count} over a generated pool.
# -----------------------------------------------------------------------------

import random
from typing import Any, Dict, List, Mapping, Optional


def _count(value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return 0
    return n if n > 0 else 0


def group_by_type(questions: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for q in questions or []:
        groups.setdefault(q.get("type") or "unknown", []).append(q)
    return groups


def select_questions(questions: List[Dict[str, Any]],
                     distribution: Optional[Mapping[str, Any]],
                     rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    """
    Sample `count` questions per type (without replacement), concatenated in
    distribution order and renumbered 1..N. Pools at or under `count` are taken whole.
    An empty selection falls back to the full, unfiltered input.
    """
    questions = list(questions or [])
    if not distribution:
        return questions
    rng = rng or random.Random()
    groups = group_by_type(questions)

    selected: List[Dict[str, Any]] = []
    for qtype, raw_count in distribution.items():
        count = _count(raw_count)
        pool = groups.get(qtype) or []
        if not count or not pool:
            continue
        if len(pool) <= count:
            picked = list(pool)
        else:
            shuffled = list(pool)
            rng.shuffle(shuffled)  # Fisher-Yates
            picked = shuffled[:count]
        selected.extend(picked)

    if not selected:
        print(f"[distribution] {dict(distribution)} matched nothing; using all {len(questions)} question(s)")
        return questions

    out = []
    for new_id, q in enumerate(selected, start=1):
        q2 = dict(q)
        q2["id"] = new_id
        out.append(q2)
    return out
