from __future__ import annotations

import re

PHASE_ID_PATTERN = re.compile(r"^\d{4}$")
PHASE_ID_STEP = 10


def phase_slug(name: str) -> str:
    """Kebab-case slug safe for directory and branch names."""
    slug = re.sub(r"\s+", "-", name.lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def phase_display_name(slug: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-") if word)


def is_phase_id(value: str) -> bool:
    return bool(PHASE_ID_PATTERN.match(value))


def next_phase_id(existing: list[str]) -> str:
    """Next id on the regular grid (0010, 0020, ...) after the highest existing id."""
    numbers = [int(item) for item in existing if is_phase_id(item)]
    if not numbers:
        return f"{PHASE_ID_STEP:04d}"
    highest = max(numbers)
    return f"{(highest // PHASE_ID_STEP + 1) * PHASE_ID_STEP:04d}"


def insert_phase_id(existing: list[str], after: str) -> str:
    """Free insertion slot directly after ``after`` and before the next existing id."""
    if not is_phase_id(after):
        raise ValueError(f"Invalid phase id: {after!r}")
    taken = {int(item) for item in existing if is_phase_id(item)}
    start = int(after)
    upper = min((number for number in taken if number > start), default=10_000)
    for candidate in range(start + 1, upper):
        if candidate not in taken:
            return f"{candidate:04d}"
    raise ValueError(f"No free phase id between {after} and {upper:04d}.")


def branch_name(phase_id: str, name: str) -> str:
    return f"{phase_id}-{phase_slug(name)}"
