"""Suppression and rebalancing plans, and their independent validation.

Planners are treated as untrusted: whatever produced a plan, it is checked
against the live membership snapshot before any list is touched.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol

HARD = "hard"
SOFT = "soft"

REASON_HARD_BOUNCE = "hard_bounce"
REASON_REPEATED_SOFT_BOUNCE = "repeated_soft_bounce"


@dataclass
class SuppressionPlan:
    suppress: list[dict[str, Any]] = field(default_factory=list)
    monitor: list[str] = field(default_factory=list)
    keep: list[str] = field(default_factory=list)
    soft_bounce_ids: list[str] = field(default_factory=list)
    removals: dict[str, list[str]] = field(default_factory=dict)

    @property
    def suppressed_ids(self) -> list[str]:
        return [row["contact_id"] for row in self.suppress]

    @property
    def removal_count(self) -> int:
        return sum(len(ids) for ids in self.removals.values())


@dataclass(frozen=True)
class Move:
    contact_id: str
    from_list: str
    to_list: str


@dataclass
class RebalancingPlan:
    targets: dict[str, int]
    moves: list[Move] = field(default_factory=list)


class Planner(Protocol):
    def plan(self, members: dict[str, list[str]]) -> RebalancingPlan: ...


def plan_suppression(
    bounces: list[dict[str, Any]],
    prior_soft_counts: dict[str, int],
    members: dict[str, list[str]],
    threshold: int = 3,
) -> SuppressionPlan:
    """Hard bounces are suppressed at once. Soft bounces are counted across
    rounds: ``threshold`` or more suppresses, two or more is monitored, a
    single one is kept."""
    hard: dict[str, str] = {}
    soft_events: dict[str, int] = defaultdict(int)
    soft_reasons: dict[str, str] = {}
    for event in bounces:
        contact_id = str(event.get("contact_id") or event.get("contactId") or "").strip()
        if not contact_id:
            continue
        bounce_type = str(event.get("type") or event.get("bounce_type") or "").lower()
        if bounce_type == HARD:
            hard.setdefault(contact_id, str(event.get("reason") or ""))
        elif bounce_type == SOFT:
            soft_events[contact_id] += 1
            soft_reasons.setdefault(contact_id, str(event.get("reason") or ""))

    plan = SuppressionPlan()
    for contact_id in sorted(hard):
        plan.suppress.append(
            {"contact_id": contact_id, "reason": REASON_HARD_BOUNCE, "bounce_type": HARD, "detail": hard[contact_id]}
        )
    for contact_id in sorted(soft_events):
        count = soft_events[contact_id]
        plan.soft_bounce_ids.extend([contact_id] * count)
        if contact_id in hard:
            continue
        total = prior_soft_counts.get(contact_id, 0) + count
        if total >= threshold:
            plan.suppress.append(
                {
                    "contact_id": contact_id,
                    "reason": REASON_REPEATED_SOFT_BOUNCE,
                    "bounce_type": SOFT,
                    "detail": f"{total} soft bounces: {soft_reasons[contact_id]}",
                }
            )
        elif total >= 2:
            plan.monitor.append(contact_id)
        else:
            plan.keep.append(contact_id)

    targets = set(plan.suppressed_ids)
    for list_id, contact_ids in members.items():
        hits = [cid for cid in contact_ids if cid in targets]
        if hits:
            plan.removals[list_id] = hits
    return plan


def apply_removals(members: dict[str, list[str]], removals: dict[str, list[str]]) -> dict[str, list[str]]:
    after: dict[str, list[str]] = {}
    for list_id, contact_ids in members.items():
        dropped = set(removals.get(list_id, []))
        after[list_id] = [cid for cid in contact_ids if cid not in dropped]
    return after


def apply_moves(members: dict[str, list[str]], moves: list[Move]) -> dict[str, list[str]]:
    after = {list_id: list(contact_ids) for list_id, contact_ids in members.items()}
    for move in moves:
        after[move.from_list].remove(move.contact_id)
        after[move.to_list].append(move.contact_id)
    return after


class BalancedPlanner:
    """Equalise partitions while moving as few contacts as possible.

    Each list's target is ``total // n``; the ``total % n`` extra slots go to
    the lists that are currently largest. Donors give up their most recently
    added contacts first, and receivers are filled in list order. A contact
    is never moved into a list that already holds it.
    """

    def plan(self, members: dict[str, list[str]]) -> RebalancingPlan:
        list_ids = list(members)
        if not list_ids:
            return RebalancingPlan(targets={})
        sizes = {list_id: len(members[list_id]) for list_id in list_ids}
        total = sum(sizes.values())
        base, remainder = divmod(total, len(list_ids))
        by_size = sorted(list_ids, key=lambda list_id: (-sizes[list_id], list_ids.index(list_id)))
        targets = {list_id: base for list_id in list_ids}
        for list_id in by_size[:remainder]:
            targets[list_id] += 1

        extra = {list_id: sizes[list_id] - targets[list_id] for list_id in list_ids if sizes[list_id] > targets[list_id]}
        candidates = {list_id: list(reversed(members[list_id])) for list_id in extra}

        moves: list[Move] = []
        for list_id in list_ids:
            deficit = targets[list_id] - sizes[list_id]
            if deficit <= 0:
                continue
            held = set(members[list_id])
            for donor in extra:
                if deficit == 0:
                    break
                kept: list[str] = []
                for contact_id in candidates[donor]:
                    if deficit == 0 or extra[donor] == 0 or contact_id in held:
                        kept.append(contact_id)
                        continue
                    moves.append(Move(contact_id=contact_id, from_list=donor, to_list=list_id))
                    held.add(contact_id)
                    extra[donor] -= 1
                    deficit -= 1
                candidates[donor] = kept
        return RebalancingPlan(targets=targets, moves=moves)


def validate_suppression(members: dict[str, list[str]], plan: SuppressionPlan) -> list[str]:
    errors: list[str] = []
    suppressed = set(plan.suppressed_ids)
    seen: set[str] = set()
    for list_id, contact_ids in plan.removals.items():
        if list_id not in members:
            errors.append(f"removal targets unknown list {list_id}")
            continue
        current = set(members[list_id])
        for contact_id in contact_ids:
            if contact_id not in current:
                errors.append(f"contact {contact_id} is not a member of list {list_id}")
            if contact_id not in suppressed:
                errors.append(f"contact {contact_id} is removed without a suppression reason")
            if (list_id, contact_id) in seen:
                errors.append(f"contact {contact_id} is removed from {list_id} twice")
            seen.add((list_id, contact_id))
    return errors


def validate_rebalancing(members: dict[str, list[str]], plan: RebalancingPlan) -> list[str]:
    errors: list[str] = []
    if set(plan.targets) != set(members):
        return [f"plan targets {sorted(plan.targets)} do not match lists {sorted(members)}"]
    total = sum(len(ids) for ids in members.values())
    if sum(plan.targets.values()) != total:
        errors.append(f"targets sum to {sum(plan.targets.values())}, lists hold {total}")
    if plan.targets and max(plan.targets.values()) - min(plan.targets.values()) > 1:
        errors.append(f"targets are not within one of each other: {plan.targets}")

    membership = {(list_id, cid) for list_id, ids in members.items() for cid in ids}
    moved: set[tuple[str, str]] = set()
    arriving: set[tuple[str, str]] = set()
    for move in plan.moves:
        if (move.from_list, move.contact_id) in moved:
            errors.append(f"contact {move.contact_id} is moved more than once")
            continue
        moved.add((move.from_list, move.contact_id))
        if (move.from_list, move.contact_id) not in membership:
            errors.append(f"contact {move.contact_id} is not a member of list {move.from_list}")
        if move.to_list not in members or move.to_list == move.from_list:
            errors.append(f"contact {move.contact_id} has invalid destination {move.to_list}")
        elif (move.to_list, move.contact_id) in membership or (move.to_list, move.contact_id) in arriving:
            errors.append(f"contact {move.contact_id} is already on list {move.to_list}")
        arriving.add((move.to_list, move.contact_id))
    if errors:
        return errors

    after = apply_moves(members, plan.moves)
    sizes = {list_id: len(ids) for list_id, ids in after.items()}
    if sizes != plan.targets:
        errors.append(f"moves produce {sizes}, targets are {plan.targets}")
    if sum(sizes.values()) != total:
        errors.append("moves do not conserve the number of contacts")
    return errors
