"""Database models and operations for sync state management."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index,
    UniqueConstraint,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import RoomSyncResult, SyncMetadata, SyncReport, ensure_utc

logger = logging.getLogger(__name__)

Base = declarative_base()


class MetadataError(Exception):
    """Sync metadata could not be read or written."""


class WriteFailed(MetadataError):
    """Sync metadata could not be persisted."""


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, UUID):
            value = UUID(str(value))
        return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, UUID):
            return UUID(value)
        return value


def _now() -> datetime:
    return datetime.now(pytz.UTC)


class RoomSyncStateDB(Base):
    """Per-room sync state: last successful sync and source fingerprint."""

    __tablename__ = 'room_sync_state'

    room_id = Column(String(255), primary_key=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    source_digest = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class EventMappingDB(Base):
    """Link between a local uid and the remote event created for it."""

    __tablename__ = 'event_mappings'

    id = Column(GUID(), primary_key=True, default=uuid4)
    room_id = Column(String(255), nullable=False)
    uid = Column(String(500), nullable=False)
    remote_id = Column(String(1024), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint('room_id', 'uid', name='uq_event_mapping_room_uid'),
        Index('idx_event_mapping_room', 'room_id'),
        Index('idx_event_mapping_remote', 'room_id', 'remote_id'),
    )


class SyncSessionDB(Base):
    """Database model for sync runs."""

    __tablename__ = 'sync_sessions'

    id = Column(GUID(), primary_key=True, default=uuid4)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dry_run = Column(Boolean, nullable=False, default=False)

    rooms_synced = Column(Integer, default=0)
    rooms_skipped = Column(Integer, default=0)
    rooms_failed = Column(Integer, default=0)

    status = Column(String(20), nullable=False, default='running')  # 'running', 'completed', 'failed'
    error_message = Column(Text, nullable=True)

    room_runs = relationship("RoomRunDB", back_populates="sync_session")

    __table_args__ = (
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
    )


class RoomRunDB(Base):
    """Outcome of one room within a sync run."""

    __tablename__ = 'room_runs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    sync_session_id = Column(GUID(), ForeignKey('sync_sessions.id'), nullable=False)
    room_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)  # RoomStatus value
    stage = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    deleted = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)

    sync_session = relationship("SyncSessionDB", back_populates="room_runs")
    sync_operations = relationship("SyncOperationDB", back_populates="room_run")

    __table_args__ = (
        Index('idx_room_run_session', 'sync_session_id'),
        Index('idx_room_run_room', 'room_id', 'timestamp'),
    )


class SyncOperationDB(Base):
    """Database model for individual remote writes."""

    __tablename__ = 'sync_operations'

    id = Column(GUID(), primary_key=True, default=uuid4)
    room_run_id = Column(GUID(), ForeignKey('room_runs.id'), nullable=False)

    operation = Column(String(20), nullable=False)  # 'create', 'update', 'delete'
    uid = Column(String(500), nullable=True)
    remote_id = Column(String(1024), nullable=True)
    event_summary = Column(String(500), nullable=True)

    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)

    room_run = relationship("RoomRunDB", back_populates="sync_operations")

    __table_args__ = (
        Index('idx_sync_operation_run', 'room_run_id'),
        Index('idx_sync_operation_success', 'success'),
    )


class DatabaseManager:
    """Database manager for sync state and run history."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def create_sync_session(self, session: Session, dry_run: bool = False) -> SyncSessionDB:
        """Create a new sync session."""
        sync_session = SyncSessionDB(dry_run=dry_run)
        session.add(sync_session)
        session.commit()
        session.refresh(sync_session)
        return sync_session

    def complete_sync_session(
        self,
        session: Session,
        sync_session_id: UUID,
        report: SyncReport,
        status: str = 'completed',
        error_message: Optional[str] = None
    ) -> None:
        """Mark a sync session finished and store its room counts."""
        sync_session = session.get(SyncSessionDB, sync_session_id)
        if sync_session is None:
            return
        sync_session.completed_at = report.completed_at or _now()
        sync_session.status = status
        sync_session.error_message = error_message
        sync_session.rooms_synced = sum(1 for r in report.rooms if r.status.value == 'synced')
        sync_session.rooms_skipped = sum(1 for r in report.rooms if r.status.value == 'skipped-unchanged')
        sync_session.rooms_failed = len(report.failed_rooms)
        session.commit()

    def record_room_run(self, session: Session, sync_session_id: UUID, result: RoomSyncResult) -> None:
        """Store a room's outcome and its individual operations."""
        room_run = RoomRunDB(
            sync_session_id=sync_session_id,
            room_id=result.room_id,
            status=result.status.value,
            stage=result.stage.value,
            reason=result.reason,
            created=result.created,
            updated=result.updated,
            deleted=result.deleted,
            errors=len(result.failed_operations),
        )
        session.add(room_run)
        for op in result.results:
            room_run.sync_operations.append(SyncOperationDB(
                operation=op.operation.value,
                uid=op.uid,
                remote_id=op.remote_id,
                event_summary=(op.event_summary or '')[:500],
                success=op.success,
                error_message=op.error_message,
            ))
        session.commit()

    def get_recent_sync_sessions(self, session: Session, limit: int = 10) -> List[SyncSessionDB]:
        """Get recent sync sessions, newest first."""
        return session.query(SyncSessionDB).order_by(
            SyncSessionDB.started_at.desc()
        ).limit(limit).all()

    def get_last_room_run(self, session: Session, room_id: str) -> Optional[RoomRunDB]:
        """Latest recorded outcome for a room."""
        return session.query(RoomRunDB).filter(
            RoomRunDB.room_id == room_id
        ).order_by(RoomRunDB.timestamp.desc()).first()

    def get_room_overview(self, session: Session, room_id: str) -> Dict[str, Any]:
        """State summary for a room, used by the status command."""
        state = session.get(RoomSyncStateDB, room_id)
        mapped = session.query(EventMappingDB).filter(EventMappingDB.room_id == room_id).count()
        last_run = self.get_last_room_run(session, room_id)
        return {
            'room_id': room_id,
            'last_synced_at': ensure_utc(state.last_synced_at) if state else None,
            'mapped_events': mapped,
            'last_status': last_run.status if last_run else None,
            'last_stage': last_run.stage if last_run else None,
            'last_reason': last_run.reason if last_run else None,
        }


class SyncMetadataStore:
    """Per-room sync metadata on top of the database.

    Rooms never share rows, so cycles for different rooms can interleave freely;
    writes for a single room are serialized by the sync engine.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('metadata')

    def load_metadata(self, room_id: str) -> SyncMetadata:
        """Load a room's metadata; an empty record when the room never synced.

        Raises:
            MetadataError: If the database cannot be read
        """
        try:
            with self.db_manager.get_session() as session:
                state = session.get(RoomSyncStateDB, room_id)
                mappings = session.query(EventMappingDB).filter(
                    EventMappingDB.room_id == room_id
                ).all()
                return SyncMetadata(
                    last_synced_at=ensure_utc(state.last_synced_at) if state else None,
                    source_digest=state.source_digest if state else None,
                    local_to_remote_id={m.uid: m.remote_id for m in mappings},
                )
        except SQLAlchemyError as e:
            raise MetadataError(f"Failed to load metadata for {room_id}: {e}") from e

    def save_metadata(self, room_id: str, metadata: SyncMetadata) -> None:
        """Replace a room's metadata in one transaction.

        Raises:
            WriteFailed: If the metadata cannot be persisted
        """
        try:
            with self.db_manager.get_session() as session:
                state = session.get(RoomSyncStateDB, room_id)
                if state is None:
                    state = RoomSyncStateDB(room_id=room_id)
                    session.add(state)
                state.last_synced_at = metadata.last_synced_at
                state.source_digest = metadata.source_digest
                state.updated_at = _now()

                existing = {
                    m.uid: m for m in session.query(EventMappingDB).filter(
                        EventMappingDB.room_id == room_id
                    ).all()
                }
                for uid, mapping in existing.items():
                    if uid not in metadata.local_to_remote_id:
                        session.delete(mapping)
                for uid, remote_id in metadata.local_to_remote_id.items():
                    mapping = existing.get(uid)
                    if mapping is None:
                        session.add(EventMappingDB(room_id=room_id, uid=uid, remote_id=remote_id))
                    elif mapping.remote_id != remote_id:
                        mapping.remote_id = remote_id
                        mapping.updated_at = _now()
                session.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"[{room_id}] failed to persist sync metadata: {e}")
            raise WriteFailed(f"Failed to save metadata for {room_id}: {e}") from e

    def clear_metadata(self, room_id: Optional[str] = None) -> int:
        """Forget stored state for one room or all rooms.

        Returns:
            Number of rooms whose state was cleared
        """
        try:
            with self.db_manager.get_session() as session:
                states = session.query(RoomSyncStateDB)
                mappings = session.query(EventMappingDB)
                if room_id is not None:
                    states = states.filter(RoomSyncStateDB.room_id == room_id)
                    mappings = mappings.filter(EventMappingDB.room_id == room_id)
                cleared = states.delete(synchronize_session=False)
                mappings.delete(synchronize_session=False)
                session.commit()
                return cleared
        except SQLAlchemyError as e:
            raise WriteFailed(f"Failed to clear metadata: {e}") from e
