from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from tinyauth.logging import get_logger
from tinyauth.service.errors import ForbiddenError

logger = get_logger(__name__)


class Logical(str, Enum):
    AND = "and"
    OR = "or"


class RequirementKind(str, Enum):
    PERMISSIONS = "permissions"
    ROLES = "roles"


@dataclass(frozen=True)
class Requirement:
    """Entitlements a route demands, combined with AND or OR."""

    kind: RequirementKind
    values: FrozenSet[str] = field(default_factory=frozenset)
    logical: Logical = Logical.AND

    def __post_init__(self) -> None:
        if not isinstance(self.values, frozenset):
            object.__setattr__(self, "values", frozenset(self.values))
        object.__setattr__(self, "kind", RequirementKind(self.kind))
        if isinstance(self.logical, str):
            try:
                object.__setattr__(self, "logical", Logical(self.logical.lower()))
            except ValueError:
                # kept as given; check() denies unknown operators
                pass


def requires_permissions(*values: str, logical: Logical = Logical.AND) -> Requirement:
    return Requirement(RequirementKind.PERMISSIONS, frozenset(values), logical)


def requires_roles(*values: str, logical: Logical = Logical.AND) -> Requirement:
    return Requirement(RequirementKind.ROLES, frozenset(values), logical)


class PolicyEvaluator:
    """Decide whether a user's entitlements satisfy a requirement.

    - AND: every required value must be held.
    - OR: at least one required value must be held.

    An empty requirement set passes under AND and fails under OR. An
    unrecognized logical operator denies.
    """

    def check(
        self,
        requirement: Optional[Requirement],
        entitlements: Optional[Iterable[str]],
    ) -> bool:
        if requirement is None:
            return True
        held = frozenset(entitlements or ())
        if requirement.logical is Logical.OR:
            return not requirement.values.isdisjoint(held)
        if requirement.logical is Logical.AND:
            return requirement.values <= held
        return False

    def enforce(
        self,
        requirement: Optional[Requirement],
        entitlements: Optional[Iterable[str]],
    ) -> None:
        if self.check(requirement, entitlements):
            return
        missing = sorted(requirement.values - frozenset(entitlements or ()))
        logger.info(
            "policy_denied",
            kind=requirement.kind.value,
            logical=getattr(requirement.logical, "value", requirement.logical),
            missing=missing,
        )
        raise ForbiddenError(
            f"missing required {requirement.kind.value}",
            detail={"kind": requirement.kind.value, "missing": missing},
        )
