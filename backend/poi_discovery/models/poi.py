# backend/poi_discovery/models/poi.py
"""
SQLAlchemy models for discovered points of interest and the generation
interactions that produced them.
"""

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base


class PointOfInterest(Base):
    """
    A stored place, either seeded or minted by the generative fallback.

    Write-back skips places already stored under the same name within the
    dedup radius; the (name, latitude, longitude) constraint backs up the
    exact-repeat case.
    """

    __tablename__ = "points_of_interest"
    __table_args__ = (
        UniqueConstraint("name", "latitude", "longitude", name="uq_poi_name_location"),
    )

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    name = Column(String(255), nullable=False, index=True)
    category = Column(String(100), nullable=False, default="attraction", index=True)
    description = Column(Text, nullable=False, default="")
    latitude = Column(Float, nullable=False, index=True)
    longitude = Column(Float, nullable=False, index=True)
    city_id = Column(String(64), nullable=True, index=True)

    address = Column(String(512), nullable=True)
    price_level = Column(Integer, nullable=True)
    rating = Column(Float, nullable=True)
    tags = Column(JSON, nullable=True)
    opening_hours = Column(JSON, nullable=True)

    source = Column(
        String(20),
        nullable=False,
        default="spatial-store",
        comment="Provenance: spatial-store or generated",
    )
    # No fixed dimension: the embedding model and its size are configurable
    embedding = Column(Vector(), nullable=True)
    embedding_model = Column(String(100), nullable=True)
    embedding_updated_at = Column(DateTime(timezone=True), nullable=True)

    llm_interaction_id = Column(
        String(26),
        ForeignKey("llm_interactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_by_user_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    def __repr__(self) -> str:
        return f"<PointOfInterest {self.name!r} ({self.latitude}, {self.longitude})>"


class LLMInteraction(Base):
    """Append-only log of generative fallback invocations."""

    __tablename__ = "llm_interactions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(36), nullable=True, index=True)

    prompt = Column(Text, nullable=False)
    response_text = Column(Text, nullable=True)
    model_name = Column(String(100), nullable=False)
    provider = Column(String(50), nullable=False)
    request_type = Column(String(50), nullable=False, default="nearby")
    search_type = Column(String(50), nullable=False, default="general")
    temperature = Column(Float, nullable=True)

    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Integer, nullable=False, default=0)
    cost_estimate = Column(Float, nullable=False, default=0.0)

    status_code = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    radius_km = Column(Float, nullable=True)

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
