"""Relationship-based authorization for task actions.

Every check here is a pure function of (actor, task, action): no storage,
no clock, no globals beyond the static capability tables below.

Rules are evaluated in precedence order; the first rule whose condition
holds *and* whose capability set covers the requested action decides the
outcome. If no rule covers the action, it is denied.

    1. admin / managing_director       -> any action
    2. creator of the task             -> view, edit, delete, move
    3. assignee of the task            -> view, move
    4. team lead of the task's team    -> view, create, edit, move, approve, reject
    5. member of the task's team       -> view
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from taskgate.models import Action, Actor, Role, Task


class Relationship(str, Enum):
    """How an actor relates to a task."""

    PRIVILEGED_ROLE = "privileged_role"
    CREATOR = "creator"
    ASSIGNEE = "assignee"
    TEAM_LEAD = "team_lead"
    TEAM_MEMBER = "team_member"


ALL_ACTIONS: frozenset[Action] = frozenset(Action)

# Actions a role may perform on any task regardless of relationship.
ROLE_CAPABILITIES: dict[Role, frozenset[Action]] = {
    Role.ADMIN: ALL_ACTIONS,
    Role.MANAGING_DIRECTOR: ALL_ACTIONS,
    Role.TEAM_LEAD: frozenset(),
    Role.EMPLOYEE: frozenset(),
}

RELATIONSHIP_CAPABILITIES: dict[Relationship, frozenset[Action]] = {
    Relationship.CREATOR: frozenset({Action.VIEW, Action.EDIT, Action.DELETE, Action.MOVE}),
    Relationship.ASSIGNEE: frozenset({Action.VIEW, Action.MOVE}),
    Relationship.TEAM_LEAD: frozenset(
        {
            Action.VIEW,
            Action.CREATE,
            Action.EDIT,
            Action.MOVE,
            Action.APPROVE,
            Action.REJECT,
        }
    ),
    Relationship.TEAM_MEMBER: frozenset({Action.VIEW}),
}

# Only these relationships can ever satisfy an approval-gated action.
APPROVAL_RELATIONSHIPS: frozenset[Relationship] = frozenset(
    {Relationship.PRIVILEGED_ROLE, Relationship.TEAM_LEAD}
)


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check.

    ``reason`` is for logs only and must never be shown to the caller.
    """

    allowed: bool
    reason: str
    relationship: Optional[Relationship] = None

    def __bool__(self) -> bool:
        return self.allowed


def _is_creator(actor: Actor, task: Task) -> bool:
    return task.creator_id == actor.id


def _is_assignee(actor: Actor, task: Task) -> bool:
    return task.assignee_id is not None and task.assignee_id == actor.id


def _leads_team(actor: Actor, task: Task) -> bool:
    return actor.leads_team(task.team_id)


def _in_team(actor: Actor, task: Task) -> bool:
    return task.team_id is not None and actor.team_id == task.team_id


_RULES: list[tuple[Relationship, Callable[[Actor, Task], bool]]] = [
    (Relationship.CREATOR, _is_creator),
    (Relationship.ASSIGNEE, _is_assignee),
    (Relationship.TEAM_LEAD, _leads_team),
    (Relationship.TEAM_MEMBER, _in_team),
]


def relationships_of(actor: Actor, task: Task) -> list[Relationship]:
    """All relationships the actor holds to the task, in precedence order."""
    held = []
    if ROLE_CAPABILITIES[actor.role] == ALL_ACTIONS:
        held.append(Relationship.PRIVILEGED_ROLE)
    held.extend(rel for rel, matches in _RULES if matches(actor, task))
    return held


def capabilities_of(relationship: Relationship, actor: Actor) -> frozenset[Action]:
    if relationship == Relationship.PRIVILEGED_ROLE:
        return ROLE_CAPABILITIES[actor.role]
    return RELATIONSHIP_CAPABILITIES[relationship]


def can_perform(actor: Actor, task: Task, action: Action) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on ``task``."""
    if action == Action.CREATE:
        return _can_create(actor, task)

    for relationship in relationships_of(actor, task):
        if action in Action.approval_actions() and relationship not in APPROVAL_RELATIONSHIPS:
            continue
        if action in capabilities_of(relationship, actor):
            return Decision(
                allowed=True,
                reason=f"{action.value} granted via {relationship.value}",
                relationship=relationship,
            )

    return Decision(
        allowed=False,
        reason=f"no relationship of {actor.role.value}:{actor.id} grants {action.value}",
    )


def can_approve(actor: Actor, task: Task) -> Decision:
    """Approval-specific check used for both approve and reject."""
    return can_perform(actor, task, Action.APPROVE)


def _can_create(actor: Actor, draft: Task) -> Decision:
    """Creation is judged against the draft before it exists."""
    if Action.CREATE in ROLE_CAPABILITIES[actor.role]:
        return Decision(True, "create granted via privileged_role", Relationship.PRIVILEGED_ROLE)

    if _leads_team(actor, draft):
        return Decision(True, "create granted via team_lead", Relationship.TEAM_LEAD)

    # Personal task path: an employee may file work for themselves only.
    if draft.creator_id == actor.id and draft.assignee_id == actor.id:
        if draft.team_id is None or draft.team_id == actor.team_id:
            return Decision(True, "create granted via personal task", Relationship.CREATOR)

    return Decision(
        allowed=False,
        reason=f"{actor.role.value}:{actor.id} cannot create tasks for team {draft.team_id}",
    )


def can_read_audit_trail(actor: Actor, task: Optional[Task]) -> Decision:
    """Audit trail of a task: privileged roles, or anyone who can view it."""
    if Action.VIEW_AUDIT in ROLE_CAPABILITIES[actor.role]:
        return Decision(True, "view_audit granted via privileged_role", Relationship.PRIVILEGED_ROLE)
    if task is None:
        return Decision(False, "non-task audit trails are restricted to privileged roles")
    return can_perform(actor, task, Action.VIEW)


def can_read_user_activity(actor: Actor, user_id: str) -> Decision:
    if actor.id == user_id:
        return Decision(True, "own activity")
    if Action.VIEW_AUDIT in ROLE_CAPABILITIES[actor.role]:
        return Decision(True, "view_audit granted via privileged_role", Relationship.PRIVILEGED_ROLE)
    return Decision(False, f"{actor.id} cannot read activity of {user_id}")


def can_read_system_audit(actor: Actor) -> Decision:
    """Summary, bulk verification and metrics are privileged-only."""
    if Action.VIEW_AUDIT in ROLE_CAPABILITIES[actor.role]:
        return Decision(True, "view_audit granted via privileged_role", Relationship.PRIVILEGED_ROLE)
    return Decision(False, f"{actor.role.value} cannot read system audit data")
