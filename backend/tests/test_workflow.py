import pytest

from database import FloorplanModel, PlanningAnalysis, Project
from workflow import (
    InvalidTransition, ModelStatus, PlanningStatus, PreconditionFailed, advance, can_transition, fail,
)


@pytest.fixture
def model(db, user):
    project = Project(user_id=user.id, name="House")
    db.add(project)
    db.commit()
    row = FloorplanModel(project_id=project.id, original_url="https://blob/plan.png")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


@pytest.fixture
def analysis(db, user):
    row = PlanningAnalysis(user_id=user.id, property_image_url="https://blob/house.jpg")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def test_model_transition_table(model):
    assert can_transition(model, "uploaded", "generating_isometric")
    assert can_transition(model, "completed", "retexturing")
    assert can_transition(model, "failed", "generating_3d")
    assert not can_transition(model, "uploaded", "completed")
    assert not can_transition(model, "retexturing", "retexturing")
    assert not can_transition(model, "bogus", "completed")


def test_planning_transition_table(analysis):
    assert can_transition(analysis, "pending", "analyzing")
    assert can_transition(analysis, "pending", "epc_lookup")
    assert can_transition(analysis, "options_ready", "generating")
    assert not can_transition(analysis, "analyzing", "completed")


def test_advance_moves_and_writes_fields(db, model):
    advance(db, model, ModelStatus.uploaded, ModelStatus.generating_isometric, isometric_prompt="brick")
    assert model.status == "generating_isometric"
    assert model.isometric_prompt == "brick"


def test_advance_refuses_when_status_moved_on(db, model):
    advance(db, model, "uploaded", "generating_isometric")
    with pytest.raises(PreconditionFailed):
        advance(db, model, "uploaded", "generating_isometric")
    assert model.status == "generating_isometric"


def test_advance_rejects_edges_outside_the_table(db, model):
    with pytest.raises(InvalidTransition):
        advance(db, model, "uploaded", "completed")


def test_advance_extra_conditions(db, model):
    db.query(FloorplanModel).filter(FloorplanModel.id == model.id).update(
        {"status": "completed", "retexture_used": True}
    )
    db.commit()
    with pytest.raises(PreconditionFailed):
        advance(
            db, model, "completed", "retexturing",
            conditions=(FloorplanModel.retexture_used.is_(False),),
        )
    assert model.status == "completed"


def test_fail_records_planning_error(db, analysis):
    advance(db, analysis, PlanningStatus.pending, PlanningStatus.analyzing)
    fail(db, analysis, "Gemini unavailable")
    assert analysis.status == "failed"
    assert analysis.error_message == "Gemini unavailable"


def test_fail_leaves_terminal_and_edgeless_states(db, model):
    db.query(FloorplanModel).filter(FloorplanModel.id == model.id).update({"status": "completed"})
    db.commit()
    fail(db, model)
    assert model.status == "completed"

    db.query(FloorplanModel).filter(FloorplanModel.id == model.id).update({"status": "uploaded"})
    db.commit()
    fail(db, model)
    assert model.status == "uploaded"
