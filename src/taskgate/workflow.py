"""Kanban stage graph and its sanctioned edges."""

from taskgate.models import AuditAction, Stage

# Generic forward moves. Leaving review is never a generic move.
STAGE_GRAPH: dict[Stage, frozenset[Stage]] = {
    Stage.BACKLOG: frozenset({Stage.TODO}),
    Stage.TODO: frozenset({Stage.IN_PROGRESS}),
    Stage.IN_PROGRESS: frozenset({Stage.REVIEW}),
    Stage.REVIEW: frozenset(),
    Stage.DONE: frozenset(),
}

APPROVAL_EDGE: tuple[Stage, Stage] = (Stage.REVIEW, Stage.DONE)

# The only sanctioned backward edge.
REJECTION_EDGE: tuple[Stage, Stage] = (Stage.REVIEW, Stage.IN_PROGRESS)

INITIAL_STAGES: frozenset[Stage] = frozenset({Stage.BACKLOG, Stage.TODO})


def is_valid_move(from_stage: Stage, to_stage: Stage) -> bool:
    return to_stage in STAGE_GRAPH[from_stage]


def sanctioned_edges() -> set[tuple[Stage, Stage]]:
    """Every edge the store will accept in a compare-and-set."""
    edges = {(src, dst) for src, targets in STAGE_GRAPH.items() for dst in targets}
    edges.add(APPROVAL_EDGE)
    edges.add(REJECTION_EDGE)
    return edges


def edge_for_action(action: AuditAction, from_stage: Stage) -> Stage | None:
    """Target stage of approve/reject from ``from_stage``, if defined."""
    if action == AuditAction.APPROVE and from_stage == APPROVAL_EDGE[0]:
        return APPROVAL_EDGE[1]
    if action == AuditAction.REJECT and from_stage == REJECTION_EDGE[0]:
        return REJECTION_EDGE[1]
    return None
