from typing import Optional

from rapidfuzz.distance import Levenshtein

from errors import LedgerValidationError
from models import CATEGORY_LABELS, ExpenseCategory


class CategoryAmbiguous(LedgerValidationError):
    pass


def resolve_category(raw: Optional[str]) -> ExpenseCategory:
    """Map a free-text label onto the fixed expense categories.

    Blank input falls back to ``other``. Ids and display labels match
    case-insensitively; otherwise the closest category within one edit wins.
    """
    text = (raw or "").strip().lower()
    if not text:
        return ExpenseCategory.other

    candidates: dict[str, ExpenseCategory] = {}
    for category, label in CATEGORY_LABELS.items():
        candidates[category.value] = category
        candidates[label.lower()] = category
    if text in candidates:
        return candidates[text]

    best_distance: Optional[int] = None
    best: set[ExpenseCategory] = set()
    for name, category in candidates.items():
        dist = int(Levenshtein.distance(text, name))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = {category}
        elif dist == best_distance:
            best.add(category)

    if best_distance is not None and best_distance <= 1:
        if len(best) > 1:
            options = ", ".join(sorted(c.value for c in best))
            raise CategoryAmbiguous(
                f"Category '{raw}' is ambiguous; matches: {options}"
            )
        return next(iter(best))
    raise LedgerValidationError(f"Unknown category: {raw!r}")
