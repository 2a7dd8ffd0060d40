"""Participant references and caller identity.

A tournament entrant is either a user or a team. ``ParticipantRef`` keeps the
kind next to the id so code never has to guess which table an id points at;
the pair is flattened into ``*_id`` / ``*_type`` columns only inside the models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ParticipantType(str, Enum):
    USER = "USER"
    TEAM = "TEAM"


class Role(str, Enum):
    """Roles handed over by the identity provider."""

    PLAYER = "PLAYER"
    MODERATOR = "MODERATOR"
    TOURNAMENT_MANAGER = "TOURNAMENT_MANAGER"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class ParticipantRef:
    """A user or team taking part in a tournament or match."""

    kind: ParticipantType
    id: str

    @classmethod
    def user(cls, user_id: str) -> "ParticipantRef":
        return cls(ParticipantType.USER, user_id)

    @classmethod
    def team(cls, team_id: str) -> "ParticipantRef":
        return cls(ParticipantType.TEAM, team_id)

    @classmethod
    def from_columns(
        cls, participant_id: str | None, participant_type: ParticipantType | str | None
    ) -> "ParticipantRef | None":
        if participant_id is None or participant_type is None:
            return None
        return cls(ParticipantType(participant_type), participant_id)

    @property
    def is_user(self) -> bool:
        return self.kind == ParticipantType.USER

    @property
    def is_team(self) -> bool:
        return self.kind == ParticipantType.TEAM


@dataclass(frozen=True)
class Caller:
    """Authenticated caller as asserted by the identity provider.

    ``team_ids`` are the teams the user may act for in matches.
    """

    user_id: str
    roles: frozenset[Role] = field(default_factory=frozenset)
    team_ids: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, *roles: Role) -> bool:
        return bool(self.roles.intersection(roles))

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    @property
    def is_moderator(self) -> bool:
        return self.has_role(Role.MODERATOR, Role.ADMIN)

    def acts_for(self, participant: ParticipantRef | None) -> bool:
        if participant is None:
            return False
        if participant.is_user:
            return participant.id == self.user_id
        return participant.id in self.team_ids
