"""
Routing sequence engine.

Keeps an ordered list of routing-step payloads densely numbered 1..n.
Every function returns a new list of new dicts; inputs are never mutated and
nothing here touches the database.

    steps = append_step([], {"operation_name": "Melt"})
    steps = append_step(steps, {"operation_name": "Cast"})
    steps = move_step_down(steps, 0)   # → Cast(1), Melt(2)

RoutingEditSession wraps the same operations for an editor that accumulates
changes and submits the whole list in one update call.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from process_routing.core.exceptions import ConflictError
from process_routing.models.process_template import EDITABLE_STATUSES

logger = logging.getLogger(__name__)

Step = dict[str, Any]

# Fields that identify a persisted step; dropped when content is cloned
_IDENTITY_FIELDS = ("id", "template_id")


def _copy_all(steps: Iterable[Step]) -> list[Step]:
    return [dict(s) for s in steps]


def resequence(steps: Iterable[Step]) -> list[Step]:
    """Renumber steps 1..n in list order. A dense list comes back unchanged."""
    result = _copy_all(steps)
    for position, step in enumerate(result, start=1):
        step["sequence_number"] = position
    return result


def sort_by_sequence(steps: Iterable[Step]) -> list[Step]:
    """Stable sort by current sequence_number; unnumbered steps go last."""
    indexed = list(enumerate(_copy_all(steps)))

    def _key(item):
        idx, step = item
        seq = step.get("sequence_number")
        if not isinstance(seq, int) or isinstance(seq, bool):
            return (1, 0, idx)
        return (0, seq, idx)

    return [step for _, step in sorted(indexed, key=_key)]


def is_dense(steps: Iterable[Step]) -> bool:
    """True iff the sequence numbers are exactly 1..n in list order."""
    numbers = [s.get("sequence_number") for s in steps]
    return numbers == list(range(1, len(numbers) + 1))


def append_step(steps: Iterable[Step], step: Step) -> list[Step]:
    """Add ``step`` at the end with sequence_number = len + 1.

    Repeated operation names are allowed: an operation may legitimately
    occur more than once in a routing.
    """
    result = _copy_all(steps)
    new_step = dict(step)
    new_step["sequence_number"] = len(result) + 1
    result.append(new_step)
    return result


def remove_step_at(steps: Iterable[Step], index: int) -> list[Step]:
    """Remove the step at ``index`` and close the gap in the numbering."""
    result = _copy_all(steps)
    if index < 0 or index >= len(result):
        raise IndexError(f"step index {index} out of range (0..{len(result) - 1})")
    del result[index]
    for step in result[index:]:
        step["sequence_number"] = step.get("sequence_number", 0) - 1
    # A list that was not dense on the way in still leaves dense
    if not is_dense(result):
        result = resequence(result)
    return result


def _swap_and_renumber(steps: list[Step], i: int, j: int) -> list[Step]:
    steps[i], steps[j] = steps[j], steps[i]
    return resequence(steps)


def move_step_up(steps: Iterable[Step], index: int) -> list[Step]:
    """Swap the step at ``index`` with its predecessor; no-op at the top."""
    result = _copy_all(steps)
    if index == 0:
        return result
    if index < 0 or index >= len(result):
        raise IndexError(f"step index {index} out of range (0..{len(result) - 1})")
    return _swap_and_renumber(result, index - 1, index)


def move_step_down(steps: Iterable[Step], index: int) -> list[Step]:
    """Swap the step at ``index`` with its successor; no-op at the bottom."""
    result = _copy_all(steps)
    if index == len(result) - 1:
        return result
    if index < 0 or index >= len(result):
        raise IndexError(f"step index {index} out of range (0..{len(result) - 1})")
    return _swap_and_renumber(result, index, index + 1)


def move_step_to(steps: Iterable[Step], index: int, new_position: int) -> list[Step]:
    """Move the step at ``index`` to 1-based ``new_position`` and renumber.

    Positions beyond the ends are clamped.
    """
    result = _copy_all(steps)
    if index < 0 or index >= len(result):
        raise IndexError(f"step index {index} out of range (0..{len(result) - 1})")
    step = result.pop(index)
    target = min(max(new_position, 1), len(result) + 1) - 1
    result.insert(target, step)
    return resequence(result)


def strip_identity(steps: Iterable[Step]) -> list[Step]:
    """Deep-copy step content with persisted ids removed."""
    result = []
    for step in steps:
        clean = copy.deepcopy(step)
        for field in _IDENTITY_FIELDS:
            clean.pop(field, None)
        result.append(clean)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Edit buffer
# ═════════════════════════════════════════════════════════════════════════════


class RoutingEditSession:
    """Client-side edit buffer for a DRAFT template's step list.

    Accumulates append/remove/move operations in memory; ``snapshot()``
    freezes the result for a single full-replace update.

        session = RoutingEditSession.from_template(service.get_template(tid))
        session.move_down(0)
        service.update_template(tid, {"steps": list(session.snapshot())})
    """

    def __init__(self, steps: Iterable[Step] | None = None, template_id: int | None = None):
        self.template_id = template_id
        self._steps = resequence(sort_by_sequence(steps or []))

    @classmethod
    def from_template(cls, template: dict) -> "RoutingEditSession":
        """Open a session on a serialized template; refuses non-DRAFT templates."""
        status = template.get("status")
        if status not in EDITABLE_STATUSES:
            raise ConflictError(
                "ProcessTemplate", "status", status,
                message=f"Template {template.get('id')} is {status}; only DRAFT templates can be edited",
            )
        return cls(template.get("steps") or [], template_id=template.get("id"))

    @property
    def steps(self) -> list[Step]:
        return _copy_all(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def append(self, step: Step) -> None:
        self._steps = append_step(self._steps, step)

    def remove_at(self, index: int) -> None:
        self._steps = remove_step_at(self._steps, index)

    def move_up(self, index: int) -> None:
        self._steps = move_step_up(self._steps, index)

    def move_down(self, index: int) -> None:
        self._steps = move_step_down(self._steps, index)

    def move_to(self, index: int, new_position: int) -> None:
        self._steps = move_step_to(self._steps, index, new_position)

    def snapshot(self) -> tuple[Step, ...]:
        """Immutable, deep-copied view of the current list for submission."""
        logger.debug(
            "Routing edit snapshot template_id=%s steps=%d", self.template_id, len(self._steps),
        )
        return tuple(copy.deepcopy(s) for s in self._steps)
