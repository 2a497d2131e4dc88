"""
Architect Studio - Workflow Status Machine
Closed status sets for floorplan models and planning analyses, plus
compare-and-swap transitions applied at the storage layer.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Iterable, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from database import FloorplanModel, PlanningAnalysis

logger = logging.getLogger(__name__)


class ModelStatus(str, enum.Enum):
    uploaded             = "uploaded"
    generating_isometric = "generating_isometric"
    isometric_ready      = "isometric_ready"
    generating_3d        = "generating_3d"
    completed            = "completed"
    failed               = "failed"
    retexturing          = "retexturing"


class PlanningStatus(str, enum.Enum):
    pending            = "pending"
    analyzing          = "analyzing"
    searching          = "searching"
    awaiting_selection = "awaiting_selection"
    generating         = "generating"
    completed          = "completed"
    failed             = "failed"
    # extend workflow
    epc_lookup         = "epc_lookup"
    pdr_calculating    = "pdr_calculating"
    searching_real     = "searching_real"
    options_ready      = "options_ready"


M, P = ModelStatus, PlanningStatus

MODEL_TRANSITIONS = {
    M.uploaded:             {M.generating_isometric},
    M.generating_isometric: {M.isometric_ready, M.failed},
    M.isometric_ready:      {M.generating_isometric, M.generating_3d},
    M.generating_3d:        {M.completed, M.failed},
    # retexture runs again from completed, gated by retexture_used
    M.completed:            {M.completed, M.retexturing, M.generating_3d},
    M.retexturing:          {M.completed},
    M.failed:               {M.generating_isometric, M.generating_3d},
}

PLANNING_TRANSITIONS = {
    P.pending:            {P.analyzing, P.epc_lookup},
    P.analyzing:          {P.searching, P.failed},
    P.searching:          {P.searching, P.awaiting_selection, P.failed},
    P.awaiting_selection: {P.awaiting_selection, P.searching, P.generating},
    P.epc_lookup:         {P.pdr_calculating, P.failed},
    P.pdr_calculating:    {P.searching_real, P.failed},
    P.searching_real:     {P.options_ready, P.failed},
    P.options_ready:      {P.options_ready, P.epc_lookup, P.generating},
    P.generating:         {P.completed, P.failed},
    P.completed:          {P.generating},
    P.failed:             {P.searching, P.epc_lookup, P.generating},
}

TERMINAL = {"completed", "failed"}

Entity = Union[FloorplanModel, PlanningAnalysis]


class PreconditionFailed(Exception):
    """The entity was not in the expected status when the update ran."""

    def __init__(self, entity: Entity, expected: Iterable[str], target: str):
        self.entity_id = entity.id
        self.expected  = tuple(expected)
        self.target    = target
        super().__init__(
            f"{type(entity).__name__} {entity.id}: expected status in {self.expected} "
            f"to move to '{target}'"
        )


class InvalidTransition(PreconditionFailed):
    """The requested edge is not in the transition table."""


def _table(entity: Entity) -> dict:
    return MODEL_TRANSITIONS if isinstance(entity, FloorplanModel) else PLANNING_TRANSITIONS


def _status_enum(entity: Entity):
    return ModelStatus if isinstance(entity, FloorplanModel) else PlanningStatus


def can_transition(entity: Entity, current: str, target: str) -> bool:
    enum_cls = _status_enum(entity)
    try:
        return enum_cls(target) in _table(entity).get(enum_cls(current), set())
    except ValueError:
        return False


def advance(db: Session, entity: Entity, expected, next_status, conditions=(), **fields) -> Entity:
    """
    Move entity to next_status iff its stored status is one of `expected`.

    Status and side-effect fields are written by a single conditional
    UPDATE, so two racing requests cannot both pass the same gate.
    Raises PreconditionFailed when no row matched.
    """
    if isinstance(expected, (str, enum.Enum)):
        expected = (expected,)
    expected = tuple(_value(s) for s in expected)
    target = _value(next_status)

    for current in expected:
        if not can_transition(entity, current, target):
            raise InvalidTransition(entity, expected, target)

    model = type(entity)
    values = {"status": target, **fields}
    if hasattr(model, "updated_at"):
        values.setdefault("updated_at", datetime.now(timezone.utc))

    result = db.execute(
        update(model)
        .where(model.id == entity.id, model.status.in_(expected), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        db.refresh(entity)
        logger.info(
            f"[WORKFLOW] {model.__name__} {entity.id} is '{entity.status}', "
            f"refused move to '{target}'"
        )
        raise PreconditionFailed(entity, expected, target)

    db.refresh(entity)
    logger.info(f"[WORKFLOW] {model.__name__} {entity.id} -> {target}")
    return entity


def fail(db: Session, entity: Entity, error: str = None) -> Entity:
    """Move a non-terminal entity to failed. Planning rows keep the error text."""
    fields = {}
    if isinstance(entity, PlanningAnalysis):
        fields["error_message"] = error or "Processing failed"
    db.refresh(entity)
    current = entity.status
    if current in TERMINAL:
        logger.warning(f"[WORKFLOW] {type(entity).__name__} {entity.id} already '{current}', not failing")
        return entity
    # Only states with a failed edge; anything else keeps its value
    if not can_transition(entity, current, "failed"):
        logger.warning(f"[WORKFLOW] {type(entity).__name__} {entity.id}: no failure edge from '{current}'")
        return entity
    return advance(db, entity, current, "failed", **fields)


def _value(status) -> str:
    return status.value if isinstance(status, enum.Enum) else str(status)
