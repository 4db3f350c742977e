"""Contiguous order_index maintenance for step lists."""

from sqlalchemy.orm import Session


def renumber(db: Session, steps: list) -> None:
    """Assign order indices 0..n-1 in list order."""
    # Park on negative indices first so the unique (parent, order_index)
    # constraint never sees two rows on the same slot mid-update.
    for i, step in enumerate(steps):
        step.order_index = -(i + 1)
    db.flush()
    for i, step in enumerate(steps):
        step.order_index = i
    db.flush()
