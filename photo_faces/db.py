"""
Database layer for the face recognition subsystem.

We maintain a SQLite database with a small number of normalized tables:
photos (owned by the wider library, kept minimal here), faces, people, face
clusters with their membership rows, and face scans recording which photos
have already been through detection.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.  :class:`FaceStore`
is the storage collaborator handed to the detector pipeline, the embedding
backfill and the clusterer; each method runs in its own short transaction so
the store can be shared between the caller and a worker thread.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, LargeBinary, MetaData,
    ForeignKey, Index, create_engine, select, insert, update, delete, func
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from .geometry import BoundingBox


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "photos", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("path", String, nullable=False, unique=True),
        Column("filename", String, nullable=False),
        Column("added_at", DateTime, nullable=False, default=_utcnow),
    )
    Table(
        "people", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String, nullable=False, index=True),
        Column("created_at", DateTime, nullable=False, default=_utcnow),
        Column("updated_at", DateTime, nullable=False, default=_utcnow),
    )
    # Detected faces; embedding is NULL until generated
    Table(
        "faces", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("photo_id", Integer, ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True),
        Column("bbox_x", Integer, nullable=False),
        Column("bbox_y", Integer, nullable=False),
        Column("bbox_w", Integer, nullable=False),
        Column("bbox_h", Integer, nullable=False),
        Column("embedding", LargeBinary, nullable=True),  # little-endian float32
        Column("embedding_dim", Integer, nullable=True),
        Column("person_id", Integer, ForeignKey("people.id", ondelete="SET NULL"), nullable=True, index=True),
        Column("confidence", Float, nullable=True),
        Column("created_at", DateTime, nullable=False, default=_utcnow),
    )
    # Automatic groupings, rebuilt from scratch by every clustering run.  IDs
    # are never reused so a stale cluster ID cannot name a newer cluster.
    Table(
        "face_clusters", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("representative_face_id", Integer, ForeignKey("faces.id", ondelete="SET NULL"), nullable=True),
        Column("auto_name", String, nullable=True),
        Column("created_at", DateTime, nullable=False, default=_utcnow),
        sqlite_autoincrement=True,
    )
    members = Table(
        "face_cluster_members", metadata,
        Column("face_id", Integer, ForeignKey("faces.id", ondelete="CASCADE"), primary_key=True),
        Column("cluster_id", Integer, ForeignKey("face_clusters.id", ondelete="CASCADE"), primary_key=True),
        Column("similarity_score", Float, nullable=True),
    )
    Index("idx_face_cluster_members_cluster", members.c.cluster_id)
    # Photos that went through detection, even when no face was found
    Table(
        "face_scans", metadata,
        Column("photo_id", Integer, ForeignKey("photos.id", ondelete="CASCADE"), primary_key=True),
        Column("faces_found", Integer, nullable=False, default=0),
        Column("scanned_at", DateTime, nullable=False, default=_utcnow),
    )
    return metadata


METADATA = _make_metadata()
photos = METADATA.tables["photos"]
people = METADATA.tables["people"]
faces = METADATA.tables["faces"]
face_clusters = METADATA.tables["face_clusters"]
face_cluster_members = METADATA.tables["face_cluster_members"]
face_scans = METADATA.tables["face_scans"]


def init_db(db_path: Path) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path
        Location of the SQLite database file.  Parent directories are
        created as needed.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")
    METADATA.create_all(engine)
    return engine


def embedding_to_bytes(embedding: Sequence[float]) -> bytes:
    """Serialise an embedding as little-endian float32 bytes."""
    return np.asarray(embedding, dtype="<f4").tobytes()


def bytes_to_embedding(data: bytes) -> np.ndarray:
    """Inverse of :func:`embedding_to_bytes`; trailing partial values are dropped."""
    usable = len(data) - len(data) % 4
    return np.frombuffer(data[:usable], dtype="<f4").astype(np.float32)


@dataclass
class Face:
    id: int
    photo_id: int
    bbox: BoundingBox
    embedding: Optional[np.ndarray]
    person_id: Optional[int]
    confidence: Optional[float]


@dataclass
class FaceWithPhoto:
    face: Face
    photo_path: str
    photo_filename: str


@dataclass
class Person:
    id: int
    name: str
    face_count: int


@dataclass
class FaceCluster:
    id: int
    auto_name: str
    representative_face_id: Optional[int]
    face_count: int


def _bbox_from_row(row: Any) -> BoundingBox:
    return BoundingBox(x=row.bbox_x, y=row.bbox_y, width=row.bbox_w, height=row.bbox_h)


def _face_from_row(row: Any) -> Face:
    return Face(
        id=row.id,
        photo_id=row.photo_id,
        bbox=_bbox_from_row(row),
        embedding=bytes_to_embedding(row.embedding) if row.embedding is not None else None,
        person_id=row.person_id,
        confidence=row.confidence,
    )


class FaceStore:
    """Persistence operations used by the face pipeline.

    Parameters
    ----------
    engine: sqlalchemy.Engine
        Engine returned by :func:`init_db`.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def open(cls, db_path: Path) -> "FaceStore":
        return cls(init_db(db_path))

    def _scalar(self, stmt) -> Any:
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar()

    # ------------------------------------------------------------------ #
    # Photos and scan bookkeeping
    # ------------------------------------------------------------------ #

    def add_photo(self, path: str) -> int:
        """Register a photo by absolute path and return its ID (existing rows are reused)."""
        path = str(path)
        with self.engine.begin() as conn:
            existing = conn.execute(select(photos.c.id).where(photos.c.path == path)).scalar()
            if existing is not None:
                return int(existing)
            result = conn.execute(insert(photos).values(path=path, filename=Path(path).name))
            return int(result.inserted_primary_key[0])

    def get_photo_path(self, photo_id: int) -> Optional[str]:
        return self._scalar(select(photos.c.path).where(photos.c.id == photo_id))

    def get_photos_without_face_scan(self, directory: Optional[str] = None,
                                     limit: int = 10_000) -> List[Tuple[int, str]]:
        """Return ``(photo_id, path)`` for photos never scanned, optionally under ``directory``."""
        query = (
            select(photos.c.id, photos.c.path)
            .select_from(photos.outerjoin(face_scans, photos.c.id == face_scans.c.photo_id))
            .where(face_scans.c.photo_id.is_(None))
        )
        if directory:
            prefix = directory if directory.endswith("/") else directory + "/"
            query = query.where(photos.c.path.startswith(prefix, autoescape=True))
        query = query.order_by(photos.c.id).limit(limit)
        with self.engine.connect() as conn:
            return [(int(r.id), r.path) for r in conn.execute(query)]

    @staticmethod
    def _scan_upsert(photo_id: int, faces_found: int):
        stmt = sqlite_insert(face_scans).values(
            photo_id=photo_id, faces_found=int(faces_found), scanned_at=_utcnow()
        )
        return stmt.on_conflict_do_update(
            index_elements=[face_scans.c.photo_id],
            set_={"faces_found": stmt.excluded.faces_found, "scanned_at": stmt.excluded.scanned_at},
        )

    def mark_photo_scanned(self, photo_id: int, faces_found: int) -> None:
        """Record that a photo went through detection (upsert)."""
        with self.engine.begin() as conn:
            conn.execute(self._scan_upsert(photo_id, faces_found))

    def count_photos_needing_face_scan(self) -> int:
        query = (
            select(func.count())
            .select_from(photos.outerjoin(face_scans, photos.c.id == face_scans.c.photo_id))
            .where(face_scans.c.photo_id.is_(None))
        )
        return int(self._scalar(query))

    # ------------------------------------------------------------------ #
    # Faces
    # ------------------------------------------------------------------ #

    @staticmethod
    def _face_values(photo_id: int, bbox: BoundingBox, embedding: Optional[Sequence[float]],
                     confidence: Optional[float]) -> Dict[str, Any]:
        has_embedding = embedding is not None and len(embedding) > 0
        return dict(
            photo_id=photo_id,
            bbox_x=int(bbox.x),
            bbox_y=int(bbox.y),
            bbox_w=int(bbox.width),
            bbox_h=int(bbox.height),
            embedding=embedding_to_bytes(embedding) if has_embedding else None,
            embedding_dim=len(embedding) if has_embedding else None,
            confidence=float(confidence) if confidence is not None else None,
        )

    def store_face(self, photo_id: int, bbox: BoundingBox,
                   embedding: Optional[Sequence[float]] = None,
                   confidence: Optional[float] = None) -> int:
        """Insert a detected face and return its ID.

        An empty or missing embedding is stored as NULL so the face is picked
        up later by the embedding backfill.
        """
        with self.engine.begin() as conn:
            result = conn.execute(insert(faces).values(**self._face_values(photo_id, bbox, embedding, confidence)))
            return int(result.inserted_primary_key[0])

    def store_photo_faces(self, photo_id: int,
                          detected: Sequence[Tuple[BoundingBox, Optional[Sequence[float]], Optional[float]]]
                          ) -> List[int]:
        """Store all faces of one photo and mark it scanned in a single transaction.

        ``detected`` holds ``(bbox, embedding, confidence)`` triples.  Either
        every face and the scan record are written, or nothing is.
        """
        face_ids = []
        with self.engine.begin() as conn:
            for bbox, embedding, confidence in detected:
                result = conn.execute(insert(faces).values(**self._face_values(photo_id, bbox, embedding, confidence)))
                face_ids.append(int(result.inserted_primary_key[0]))
            conn.execute(self._scan_upsert(photo_id, len(face_ids)))
        return face_ids

    def get_faces_for_photo(self, photo_id: int) -> List[Face]:
        query = select(faces).where(faces.c.photo_id == photo_id).order_by(faces.c.id)
        with self.engine.connect() as conn:
            return [_face_from_row(r) for r in conn.execute(query)]

    def count_faces(self) -> int:
        return int(self._scalar(select(func.count()).select_from(faces)))

    def count_faces_without_embeddings(self) -> int:
        query = select(func.count()).select_from(faces).where(faces.c.embedding.is_(None))
        return int(self._scalar(query))

    def get_all_face_embeddings(self) -> List[Tuple[int, np.ndarray]]:
        """All ``(face_id, embedding)`` pairs, in face ID order."""
        query = (
            select(faces.c.id, faces.c.embedding)
            .where(faces.c.embedding.is_not(None))
            .order_by(faces.c.id)
        )
        with self.engine.connect() as conn:
            return [(int(r.id), bytes_to_embedding(r.embedding)) for r in conn.execute(query)]

    def get_faces_without_embeddings(self, limit: int) -> List[Tuple[int, int, BoundingBox]]:
        """Return ``(face_id, photo_id, bbox)`` for up to ``limit`` faces lacking an embedding."""
        query = (
            select(faces.c.id, faces.c.photo_id, faces.c.bbox_x, faces.c.bbox_y,
                   faces.c.bbox_w, faces.c.bbox_h)
            .where(faces.c.embedding.is_(None))
            .order_by(faces.c.id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [(int(r.id), int(r.photo_id), _bbox_from_row(r)) for r in conn.execute(query)]

    def update_face_embedding(self, face_id: int, embedding: Sequence[float]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(faces)
                .where(faces.c.id == face_id)
                .values(embedding=embedding_to_bytes(embedding), embedding_dim=len(embedding))
            )

    # ------------------------------------------------------------------ #
    # Face clusters
    # ------------------------------------------------------------------ #

    def create_face_cluster(self, representative_face_id: Optional[int], auto_name: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(face_clusters).values(
                    representative_face_id=representative_face_id, auto_name=auto_name
                )
            )
            return int(result.inserted_primary_key[0])

    @staticmethod
    def _member_upsert():
        stmt = sqlite_insert(face_cluster_members)
        return stmt.on_conflict_do_update(
            index_elements=[face_cluster_members.c.face_id, face_cluster_members.c.cluster_id],
            set_={"similarity_score": stmt.excluded.similarity_score},
        )

    def add_face_to_cluster(self, face_id: int, cluster_id: int, similarity_score: float) -> None:
        """Add a face to a cluster; re-adding the same pair updates the score."""
        self.add_faces_to_cluster(cluster_id, [(face_id, similarity_score)])

    def add_faces_to_cluster(self, cluster_id: int, members: Sequence[Tuple[int, float]]) -> None:
        """Add ``(face_id, similarity_score)`` pairs to a cluster in one transaction."""
        if not members:
            return
        rows = [
            {"face_id": face_id, "cluster_id": cluster_id, "similarity_score": float(score)}
            for face_id, score in members
        ]
        with self.engine.begin() as conn:
            conn.execute(self._member_upsert(), rows)

    def clear_face_clusters(self) -> None:
        """Delete all membership rows, then all clusters."""
        with self.engine.begin() as conn:
            conn.execute(delete(face_cluster_members))
            conn.execute(delete(face_clusters))

    def get_all_face_clusters(self) -> List[FaceCluster]:
        """Clusters with member counts, largest first."""
        face_count = func.count(face_cluster_members.c.face_id).label("face_count")
        query = (
            select(face_clusters.c.id, face_clusters.c.auto_name,
                   face_clusters.c.representative_face_id, face_count)
            .select_from(face_clusters.outerjoin(
                face_cluster_members, face_clusters.c.id == face_cluster_members.c.cluster_id))
            .group_by(face_clusters.c.id)
            .order_by(face_count.desc(), face_clusters.c.id)
        )
        with self.engine.connect() as conn:
            return [
                FaceCluster(id=int(r.id), auto_name=r.auto_name or "",
                            representative_face_id=r.representative_face_id,
                            face_count=int(r.face_count))
                for r in conn.execute(query)
            ]

    def get_cluster_face_ids(self, cluster_id: int) -> List[int]:
        query = (
            select(face_cluster_members.c.face_id)
            .where(face_cluster_members.c.cluster_id == cluster_id)
            .order_by(face_cluster_members.c.face_id)
        )
        with self.engine.connect() as conn:
            return [int(r.face_id) for r in conn.execute(query)]

    def get_face_cluster(self, cluster_id: int) -> Optional[FaceCluster]:
        for cluster in self.get_all_face_clusters():
            if cluster.id == cluster_id:
                return cluster
        return None

    def cluster_to_person(self, cluster_id: int, person_name: str) -> int:
        """Create a person from a cluster, assign its faces and delete the cluster."""
        member_ids = (
            select(face_cluster_members.c.face_id)
            .where(face_cluster_members.c.cluster_id == cluster_id)
        )
        with self.engine.begin() as conn:
            person_id = self._insert_person(conn, person_name)
            conn.execute(update(faces).where(faces.c.id.in_(member_ids)).values(person_id=person_id))
            conn.execute(delete(face_cluster_members).where(face_cluster_members.c.cluster_id == cluster_id))
            conn.execute(delete(face_clusters).where(face_clusters.c.id == cluster_id))
        return person_id

    def merge_face_clusters(self, cluster_ids: Sequence[int], person_name: str) -> int:
        """Create one person from several clusters in a single transaction.

        Faces of every listed cluster are assigned to the new person and the
        clusters are deleted.  Raises ``ValueError`` if any cluster is unknown,
        leaving the database untouched.
        """
        cluster_ids = list(cluster_ids)
        with self.engine.begin() as conn:
            known = set(conn.execute(
                select(face_clusters.c.id).where(face_clusters.c.id.in_(cluster_ids))
            ).scalars())
            unknown = [c for c in cluster_ids if c not in known]
            if unknown:
                raise ValueError(f"Unknown cluster: {unknown[0]}")
            member_ids = (
                select(face_cluster_members.c.face_id)
                .where(face_cluster_members.c.cluster_id.in_(cluster_ids))
            )
            person_id = self._insert_person(conn, person_name)
            conn.execute(update(faces).where(faces.c.id.in_(member_ids)).values(person_id=person_id))
            conn.execute(delete(face_cluster_members).where(face_cluster_members.c.cluster_id.in_(cluster_ids)))
            conn.execute(delete(face_clusters).where(face_clusters.c.id.in_(cluster_ids)))
        return person_id

    # ------------------------------------------------------------------ #
    # People
    # ------------------------------------------------------------------ #

    @staticmethod
    def _insert_person(conn: Connection, name: str) -> int:
        result = conn.execute(insert(people).values(name=name))
        return int(result.inserted_primary_key[0])

    @staticmethod
    def _people_query():
        face_count = func.count(faces.c.id).label("face_count")
        return (
            select(people.c.id, people.c.name, face_count)
            .select_from(people.outerjoin(faces, faces.c.person_id == people.c.id))
            .group_by(people.c.id)
        )

    def create_person(self, name: str) -> int:
        with self.engine.begin() as conn:
            return self._insert_person(conn, name)

    def get_person(self, person_id: int) -> Optional[Person]:
        query = self._people_query().where(people.c.id == person_id)
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Person(id=int(row.id), name=row.name, face_count=int(row.face_count)) if row else None

    def find_person_by_name(self, name: str) -> Optional[Person]:
        """Case-insensitive lookup by name."""
        query = self._people_query().where(func.lower(people.c.name) == name.lower())
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return Person(id=int(row.id), name=row.name, face_count=int(row.face_count)) if row else None

    def find_or_create_person(self, name: str) -> int:
        person = self.find_person_by_name(name)
        if person is not None:
            return person.id
        return self.create_person(name)

    def update_person_name(self, person_id: int, name: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(people).where(people.c.id == person_id).values(name=name, updated_at=_utcnow())
            )

    def delete_person(self, person_id: int) -> None:
        """Delete a person; their faces remain, unassigned."""
        with self.engine.begin() as conn:
            conn.execute(update(faces).where(faces.c.person_id == person_id).values(person_id=None))
            conn.execute(delete(people).where(people.c.id == person_id))

    def get_all_people(self) -> List[Person]:
        query = self._people_query().order_by(people.c.name)
        with self.engine.connect() as conn:
            return [Person(id=int(r.id), name=r.name, face_count=int(r.face_count))
                    for r in conn.execute(query)]

    def count_people(self) -> int:
        return int(self._scalar(select(func.count()).select_from(people)))

    def assign_face_to_person(self, face_id: int, person_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(faces).where(faces.c.id == face_id).values(person_id=person_id))

    def unassign_face(self, face_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(faces).where(faces.c.id == face_id).values(person_id=None))

    def _faces_with_photo(self, condition) -> List[FaceWithPhoto]:
        query = (
            select(faces, photos.c.path.label("photo_path"), photos.c.filename.label("photo_filename"))
            .select_from(faces.join(photos, faces.c.photo_id == photos.c.id))
            .where(condition)
            .order_by(photos.c.path, faces.c.id)
        )
        with self.engine.connect() as conn:
            return [
                FaceWithPhoto(face=_face_from_row(r), photo_path=r.photo_path,
                              photo_filename=r.photo_filename)
                for r in conn.execute(query)
            ]

    def get_faces_for_person(self, person_id: int) -> List[FaceWithPhoto]:
        return self._faces_with_photo(faces.c.person_id == person_id)

    def get_unassigned_faces(self) -> List[FaceWithPhoto]:
        return self._faces_with_photo(faces.c.person_id.is_(None))

    def search_photos_by_person(self, person_id: int) -> List[Tuple[int, str, str]]:
        """Distinct ``(photo_id, path, filename)`` for photos containing the person."""
        query = (
            select(photos.c.id, photos.c.path, photos.c.filename)
            .select_from(photos.join(faces, faces.c.photo_id == photos.c.id))
            .where(faces.c.person_id == person_id)
            .distinct()
            .order_by(photos.c.path)
        )
        with self.engine.connect() as conn:
            return [(int(r.id), r.path, r.filename) for r in conn.execute(query)]
