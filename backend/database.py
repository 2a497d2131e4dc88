"""
Architect Studio - Database Layer
SQLAlchemy engine handle, session dependency, and the project / model /
planning-analysis tables.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Text, Boolean, ForeignKey
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker, relationship, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── Engine handle ─────────────────────────────────────────────────────────────
class Database:
    """Owns one engine + sessionmaker. Built at startup, kept on app.state."""

    def __init__(self, url: str, **engine_kwargs):
        self.url = url
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                engine_kwargs.setdefault("poolclass", StaticPool)
        else:
            engine_kwargs.setdefault("pool_pre_ping", True)
            engine_kwargs.setdefault("pool_size", 5)
            engine_kwargs.setdefault("max_overflow", 10)
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> bool:
        try:
            # user_db registers its tables on Base when imported
            import user_db  # noqa: F401
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database connected and tables created.")
            return True
        except OperationalError as e:
            logger.warning(f"Database unavailable, tables not created. ({e})")
            return False

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()


def init_db(url: str) -> Database:
    """Initialise the database engine and create tables."""
    db = Database(url)
    db.create_all()
    return db


def get_db(request: Request):
    """FastAPI dependency: yields a session bound to the app's Database."""
    database: Optional[Database] = getattr(request.app.state, "db", None)
    if database is None:
        raise HTTPException(503, "Database unavailable.")
    db = database.session()
    try:
        yield db
    finally:
        db.close()


# ── Models ────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


class Project(Base):
    """A user's workspace grouping uploaded floorplans."""
    __tablename__ = "projects"

    id            = Column(Integer, primary_key=True, index=True)
    user_id       = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name          = Column(String(255), nullable=False)
    last_modified = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    models = relationship(
        "FloorplanModel",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="FloorplanModel.created_at.desc()",
    )

    def to_dict(self, include_models: bool = False) -> dict:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "lastModified": _iso(self.last_modified),
        }
        if include_models:
            data["models"] = [m.to_dict() for m in self.models]
        return data


class FloorplanModel(Base):
    """One floorplan moving through isometric -> 3D -> retexture."""
    __tablename__ = "floorplan_models"

    id                = Column(Integer, primary_key=True, index=True)
    project_id        = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    original_url      = Column(Text, nullable=False)
    isometric_url     = Column(Text)
    isometric_prompt  = Column(Text)
    model_3d_url      = Column(Text)
    base_model_3d_url = Column(Text)
    meshy_task_id     = Column(String(128))
    texture_prompt    = Column(Text)
    retexture_task_id = Column(String(128))
    retexture_used    = Column(Boolean, default=False, nullable=False)
    status            = Column(String(32), default="uploaded", nullable=False)
    created_at        = Column(DateTime(timezone=True), default=_utcnow)

    project = relationship("Project", back_populates="models")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "originalUrl": self.original_url,
            "isometricUrl": self.isometric_url,
            "isometricPrompt": self.isometric_prompt,
            "model3dUrl": self.model_3d_url,
            "baseModel3dUrl": self.base_model_3d_url,
            "meshyTaskId": self.meshy_task_id,
            "texturePrompt": self.texture_prompt,
            "retextureTaskId": self.retexture_task_id,
            "retextureUsed": bool(self.retexture_used),
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }


class PlanningAnalysis(Base):
    """UK planning feasibility run for one property (classic or extend workflow)."""
    __tablename__ = "planning_analyses"

    # Text columns holding serialized JSON documents
    JSON_FIELDS = (
        "property_analysis", "approval_search_results", "epc_data", "real_approval_data",
        "pdr_assessment", "party_wall_assessment", "neighbour_impact",
        "extension_options", "cost_estimate", "generated_option_floorplans",
    )

    id                          = Column(Integer, primary_key=True, index=True)
    project_id                  = Column(Integer, nullable=True)
    user_id                     = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    property_image_url          = Column(Text, nullable=False)
    floorplan_url               = Column(Text)
    address                     = Column(Text)
    postcode                    = Column(String(16))
    house_number                = Column(String(32))
    latitude                    = Column(String(32))
    longitude                   = Column(String(32))
    workflow_mode               = Column(String(16), default="classic", nullable=False)

    property_analysis           = Column(Text)
    approval_search_results     = Column(Text)
    selected_modification       = Column(String(64))
    generated_exterior_url      = Column(Text)
    generated_floorplan_url     = Column(Text)

    epc_data                    = Column(Text)
    real_approval_data          = Column(Text)
    pdr_assessment              = Column(Text)
    is_conservation_area        = Column(Boolean, default=False)
    is_listed_building          = Column(Boolean, default=False)
    listed_building_grade       = Column(String(8))
    conservation_area_name      = Column(Text)
    orientation                 = Column(String(8))
    party_wall_assessment       = Column(Text)
    neighbour_impact            = Column(Text)
    extension_options           = Column(Text)
    selected_option_tier        = Column(String(32))
    cost_estimate               = Column(Text)
    generated_option_floorplans = Column(Text)

    status                      = Column(String(32), default="pending", nullable=False)
    error_message               = Column(Text)
    created_at                  = Column(DateTime(timezone=True), default=_utcnow)
    updated_at                  = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def load_json(self, field: str):
        raw = getattr(self, field)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[PLANNING] analysis {self.id}: column {field} is not valid JSON")
            return None

    def to_dict(self) -> dict:
        def camel(name: str) -> str:
            head, *rest = name.split("_")
            return head + "".join(p.capitalize() for p in rest)

        data = {}
        for column in self.__table__.columns:
            key = column.name
            if key in self.JSON_FIELDS:
                data[camel(key)] = self.load_json(key)
            elif isinstance(getattr(self, key), datetime):
                data[camel(key)] = _iso(getattr(self, key))
            else:
                data[camel(key)] = getattr(self, key)
        return data
