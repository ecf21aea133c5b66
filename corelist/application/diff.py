from __future__ import annotations

from typing import List, Sequence

from corelist.domain.entities import DiffPlan, UpdatePolicy


def needs_reorder(current: Sequence[str], target: Sequence[str]) -> bool:
    """True when entries present in both sequences appear in a different relative order."""
    target_set = set(target)
    current_set = set(current)
    common_current = [uri for uri in current if uri in target_set]
    common_target = [uri for uri in target if uri in current_set]
    return common_current != common_target


def compute_diff(current: Sequence[str], target: Sequence[str], policy: UpdatePolicy) -> DiffPlan:
    """Compute the operations that bring ``current`` in line with ``target``.

    Append keeps every existing entry in place and appends the target entries that are
    missing, in target order. Reset makes the playlist exactly ``target`` (order and
    duplicates included) by clearing it and writing the target; when the playlist
    already equals the target the plan is empty.

    ``final_order`` is the playlist expected after the plan is applied.
    """
    policy = UpdatePolicy(policy)
    current = list(current)
    target = list(target)
    reorder = needs_reorder(current, target)

    if policy is UpdatePolicy.APPEND:
        present = set(current)
        to_add = [uri for uri in target if uri not in present]
        return DiffPlan(
            policy=policy,
            to_add=to_add,
            to_remove=[],
            final_order=current + to_add,
            needs_reorder=reorder,
            added_count=len(to_add),
            skipped_count=len(target) - len(to_add),
        )

    if current == target:
        to_add: List[str] = []
        to_remove: List[str] = []
    else:
        to_add = target
        to_remove = current
    return DiffPlan(
        policy=policy,
        to_add=list(to_add),
        to_remove=list(to_remove),
        final_order=list(target),
        needs_reorder=reorder,
        added_count=len(target),
        skipped_count=0,
    )


def apply_plan(current: Sequence[str], plan: DiffPlan) -> List[str]:
    """Return the playlist that results from applying ``plan`` to ``current``.

    Removal drops every occurrence of a removed URI; additions are appended in order.
    """
    removed = set(plan.to_remove)
    remaining = [uri for uri in current if uri not in removed]
    return remaining + list(plan.to_add)
