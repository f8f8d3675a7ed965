# backend/poi_discovery/repositories/poi_repository.py
"""
Repository for stored points of interest and generation interactions.

Implements the spatial, persistence and backfill ports on top of
SQLAlchemy. Each call opens its own short-lived session because the
orchestrator invokes these methods from worker threads.

Distance filtering uses a bounding-box prefilter in SQL followed by an
exact haversine check in Python, so it runs on any SQL backend.
Embeddings live in a pgvector column; on PostgreSQL similarity search is
ordered by cosine distance in SQL, elsewhere the stored vectors are
scanned in batches.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
import heapq
import logging
import math
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, sessionmaker
from sqlalchemy.sql import Select

from ..core.exceptions import RepositoryException
from ..core.ulid_helper import generate_ulid
from ..models.poi import LLMInteraction, PointOfInterest
from ..schemas.poi import POI, POISource
from ..services.discovery.enrichment import DEFAULT_DEDUP_RADIUS_M, is_duplicate
from ..services.discovery.scoring import EARTH_RADIUS_KM, cosine_similarity, haversine_km

if TYPE_CHECKING:
    from ..services.discovery.generation_worker import GenerationInteraction

logger = logging.getLogger(__name__)

# Rows fetched per round trip when scanning embeddings outside PostgreSQL
_SIMILARITY_SCAN_BATCH = 500


def _as_floats(vector: Any) -> Optional[List[float]]:
    # pgvector hands back numpy arrays
    if vector is None or len(vector) == 0:
        return None
    return [float(x) for x in vector]


def _within_box(query: Query, lat: float, lon: float, radius_km: float) -> Query:
    """Restrict a PointOfInterest query to the box around a circle."""
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(lat))
    lon_delta = 180.0 if cos_lat < 1e-6 else min(180.0, lat_delta / cos_lat)

    query = query.filter(PointOfInterest.latitude.between(lat - lat_delta, lat + lat_delta))
    if lon_delta >= 180.0:
        return query
    west, east = lon - lon_delta, lon + lon_delta
    if west < -180.0:
        return query.filter(
            (PointOfInterest.longitude >= west + 360.0) | (PointOfInterest.longitude <= east)
        )
    if east > 180.0:
        return query.filter(
            (PointOfInterest.longitude >= west) | (PointOfInterest.longitude <= east - 360.0)
        )
    return query.filter(PointOfInterest.longitude.between(west, east))


def similarity_statement(
    embedding: Sequence[float], city_id: Optional[str], limit: int
) -> Select:
    """Nearest stored embeddings by cosine distance (pgvector <=>)."""
    distance = PointOfInterest.embedding.cosine_distance(list(embedding)).label("distance")
    stmt = select(PointOfInterest, distance).where(PointOfInterest.embedding.isnot(None))
    if city_id:
        stmt = stmt.where(func.lower(PointOfInterest.city_id) == city_id.lower())
    return stmt.order_by(distance).limit(limit)


class POIRepository:
    """SQLAlchemy-backed POI store."""

    def __init__(
        self,
        session_factory: "sessionmaker[Session]",
        dedup_radius_m: float = DEFAULT_DEDUP_RADIUS_M,
    ) -> None:
        self.session_factory = session_factory
        self.dedup_radius_m = dedup_radius_m

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"POI repository {operation} failed: {e}")
            raise RepositoryException(f"Failed to {operation}: {e}") from e
        finally:
            session.close()

    # =========================================================================
    # Conversion
    # =========================================================================

    @staticmethod
    def to_schema(row: PointOfInterest) -> POI:
        return POI(
            id=row.id,
            name=row.name,
            category=row.category or "attraction",
            latitude=row.latitude,
            longitude=row.longitude,
            description=row.description or "",
            address=row.address,
            price_level=row.price_level,
            rating=row.rating,
            tags=list(row.tags or []),
            opening_hours=row.opening_hours,
            city_id=row.city_id,
            source=row.source or POISource.SPATIAL_STORE.value,
            embedding=_as_floats(row.embedding),
        )

    # =========================================================================
    # Spatial queries
    # =========================================================================

    def find_near(
        self,
        lat: float,
        lon: float,
        radius_m: float,
        category: Optional[str] = None,
    ) -> List[POI]:
        """
        POIs within radius_m of (lat, lon), ascending by distance.

        rank_score and distance_km are both set to the distance in km.
        """
        radius_km = radius_m / 1000.0

        with self._session("query nearby POIs") as session:
            query = _within_box(session.query(PointOfInterest), lat, lon, radius_km)
            if category:
                query = query.filter(
                    func.lower(PointOfInterest.category) == category.strip().lower()
                )
            rows = query.all()

        matches: List[Tuple[float, POI]] = []
        for row in rows:
            distance_km = haversine_km(lat, lon, row.latitude, row.longitude)
            if distance_km <= radius_km:
                matches.append((distance_km, self.to_schema(row)))
        matches.sort(key=lambda pair: pair[0])

        return [
            poi.model_copy(update={"distance_km": distance, "rank_score": distance})
            for distance, poi in matches
        ]

    def find_similar(
        self,
        embedding: Sequence[float],
        city_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[POI]:
        """POIs with a stored embedding, descending by cosine similarity."""
        if limit < 1:
            return []

        with self._session("query similar POIs") as session:
            if session.get_bind().dialect.name == "postgresql":
                rows = session.execute(similarity_statement(embedding, city_id, limit)).all()
                return [
                    self.to_schema(row).model_copy(update={"rank_score": 1.0 - float(distance)})
                    for row, distance in rows
                ]

            query = session.query(PointOfInterest).filter(PointOfInterest.embedding.isnot(None))
            if city_id:
                query = query.filter(func.lower(PointOfInterest.city_id) == city_id.lower())
            # Min-heap of the best `limit` rows; ids are unique so rows never compare
            best: List[Tuple[float, str, PointOfInterest]] = []
            for row in query.yield_per(_SIMILARITY_SCAN_BATCH):
                vector = _as_floats(row.embedding)
                if vector is None:
                    continue
                item = (cosine_similarity(embedding, vector), row.id, row)
                if len(best) < limit:
                    heapq.heappush(best, item)
                elif item[:2] > best[0][:2]:
                    heapq.heapreplace(best, item)

            best.sort(reverse=True)
            return [
                self.to_schema(row).model_copy(update={"rank_score": similarity})
                for similarity, _, row in best
            ]

    # =========================================================================
    # Writes
    # =========================================================================

    def add_poi(self, poi: POI, embedding_model: Optional[str] = None) -> POI:
        """Insert a seeded POI (source spatial-store unless set otherwise)."""
        with self._session("add POI") as session:
            row = PointOfInterest(
                id=poi.id or generate_ulid(),
                name=poi.name,
                category=poi.category,
                description=poi.description,
                latitude=poi.latitude,
                longitude=poi.longitude,
                city_id=poi.city_id,
                address=poi.address,
                price_level=poi.price_level,
                rating=poi.rating,
                tags=list(poi.tags),
                opening_hours=poi.opening_hours,
                source=POISource(poi.source).value,
                embedding=list(poi.embedding) if poi.embedding else None,
                embedding_model=embedding_model if poi.embedding else None,
            )
            session.add(row)
            session.flush()
            return self.to_schema(row)

    def save_generation_interaction(self, record: "GenerationInteraction") -> str:
        with self._session("save generation interaction") as session:
            session.add(
                LLMInteraction(
                    id=record.id,
                    user_id=record.user_id,
                    prompt=record.prompt,
                    response_text=record.response_text,
                    model_name=record.model_name,
                    provider=record.provider,
                    request_type=record.request_type,
                    search_type=record.search_type,
                    temperature=record.temperature,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    latency_ms=record.latency_ms,
                    cost_estimate=record.cost_estimate,
                    status_code=record.status_code,
                    error_message=record.error_message,
                    latitude=record.latitude,
                    longitude=record.longitude,
                    radius_km=record.radius_km,
                    created_at=record.created_at,
                )
            )
        return record.id

    def save_generated_pois(
        self,
        user_id: Optional[str],
        pois: Sequence[POI],
        interaction_id: Optional[str],
    ) -> int:
        """
        Insert generated POIs, skipping blank names, (0, 0) coordinates and
        places already stored under the same name within the dedup radius.

        Returns:
            Number of rows inserted
        """
        inserted = 0
        with self._session("save generated POIs") as session:
            accepted: List[POI] = []
            for poi in pois:
                if not poi.name.strip() or (poi.latitude == 0.0 and poi.longitude == 0.0):
                    continue
                if any(is_duplicate(poi, other, self.dedup_radius_m) for other in accepted):
                    continue
                if self._stored_duplicate(session, poi) is not None:
                    continue
                accepted.append(poi)

                row = PointOfInterest(
                    id=poi.id or generate_ulid(),
                    name=poi.name,
                    category=poi.category,
                    description=poi.description,
                    latitude=poi.latitude,
                    longitude=poi.longitude,
                    city_id=poi.city_id,
                    address=poi.address,
                    price_level=poi.price_level,
                    rating=poi.rating,
                    tags=list(poi.tags),
                    opening_hours=poi.opening_hours,
                    source=POISource.GENERATED.value,
                    llm_interaction_id=interaction_id,
                    created_by_user_id=user_id,
                )
                session.add(row)
                inserted += 1
        return inserted

    def _stored_duplicate(self, session: Session, poi: POI) -> Optional[str]:
        """Id of a stored POI with the same name within the dedup radius."""
        radius_km = self.dedup_radius_m / 1000.0
        nearby = _within_box(session.query(PointOfInterest), poi.latitude, poi.longitude, radius_km)
        for row in nearby.all():
            if is_duplicate(poi, self.to_schema(row), self.dedup_radius_m):
                return row.id
        return None

    # =========================================================================
    # Embedding backfill
    # =========================================================================

    def list_pois_missing_embedding(
        self, limit: int, after_id: Optional[str] = None
    ) -> List[POI]:
        with self._session("list POIs missing embeddings") as session:
            query = session.query(PointOfInterest).filter(PointOfInterest.embedding.is_(None))
            if after_id is not None:
                query = query.filter(PointOfInterest.id > after_id)
            rows = query.order_by(PointOfInterest.id).limit(limit).all()
            return [self.to_schema(row) for row in rows]

    def update_poi_embedding(self, poi_id: str, embedding: Sequence[float], model: str) -> bool:
        with self._session("update POI embedding") as session:
            row = session.get(PointOfInterest, poi_id)
            if row is None:
                return False
            row.embedding = [float(x) for x in embedding]
            row.embedding_model = model
            row.embedding_updated_at = datetime.now(timezone.utc)
            return True

    def count(self) -> int:
        with self._session("count POIs") as session:
            return int(session.query(func.count(PointOfInterest.id)).scalar() or 0)
