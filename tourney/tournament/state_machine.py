"""Transition tables for the tournament, match, dispute and transaction lifecycles.

Each entity declares its lifecycle as a list of ``Transition`` rows and hands
it to a ``StateMachine``. Entity methods ask the machine for the next status
instead of assigning status fields directly, so every status change is
validated against one table.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from tourney.errors import AlreadyTerminalError, InvalidTransitionError

S = TypeVar("S", bound=Enum)


@dataclass(frozen=True)
class Transition(Generic[S]):
    """One allowed (source, event) -> targets row."""

    source: S
    event: str
    targets: tuple[S, ...]

    @classmethod
    def of(cls, source: S, event: str, *targets: S) -> "Transition[S]":
        return cls(source=source, event=event, targets=tuple(targets))


class StateMachine(Generic[S]):
    """Validates status changes against a fixed transition table.

    Args:
        entity: Entity name used in error messages
        transitions: Allowed transitions
        terminal: States that reject every event with ``terminal_error``
        error: Exception raised for a disallowed event
        terminal_error: Exception raised for any event on a terminal state
    """

    def __init__(
        self,
        entity: str,
        transitions: Iterable[Transition[S]],
        *,
        terminal: Iterable[S] = (),
        error: type[InvalidTransitionError] = InvalidTransitionError,
        terminal_error: type[InvalidTransitionError] = AlreadyTerminalError,
    ):
        self.entity = entity
        self.terminal = frozenset(terminal)
        self.error = error
        self.terminal_error = terminal_error
        self._table: dict[tuple[S, str], tuple[S, ...]] = {}
        for t in transitions:
            key = (t.source, t.event)
            if key in self._table:
                raise ValueError(f"Duplicate transition {t.source}/{t.event} for {entity}")
            if t.source in self.terminal:
                raise ValueError(f"Terminal state {t.source} cannot have transitions")
            self._table[key] = t.targets

    def can(self, current: S, event: str, target: S | None = None) -> bool:
        targets = self._table.get((current, event))
        if targets is None:
            return False
        return target is None or target in targets

    def allowed_events(self, current: S) -> list[str]:
        return [event for (source, event) in self._table if source == current]

    def is_terminal(self, state: S) -> bool:
        return state in self.terminal

    def next_state(self, current: S, event: str, target: S | None = None) -> S:
        """Return the status reached by ``event`` from ``current``.

        ``target`` picks among several possible targets (e.g. a dispute
        resolution can end in any of the resolved statuses).

        Raises:
            terminal_error: ``current`` is terminal
            error: the event (or the requested target) is not allowed
        """
        if current in self.terminal:
            raise self.terminal_error(
                f"{self.entity} is already {current.value}",
                entity=self.entity,
                from_state=current.value,
                event=event,
            )

        targets = self._table.get((current, event))
        if targets is None:
            raise self.error(
                entity=self.entity,
                from_state=current.value,
                event=event,
            )

        if target is None:
            if len(targets) != 1:
                raise ValueError(
                    f"{self.entity}.{event} from {current.value} needs an explicit target"
                )
            return targets[0]

        if target not in targets:
            raise self.error(
                f"Cannot {event} {self.entity} from {current.value} to {target.value}",
                entity=self.entity,
                from_state=current.value,
                event=event,
                details={"target": target.value},
            )
        return target
