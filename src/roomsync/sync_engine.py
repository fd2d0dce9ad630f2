"""Sync engine: pushes each room's local proposals to its remote calendar."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, load_rooms
from .database import DatabaseManager, MetadataError, SyncMetadataStore, WriteFailed
from .diff import compute_diff
from .models import (
    RoomConfig, RoomStatus, RoomSyncResult, SourceVersion, SyncDiff, SyncMetadata,
    SyncOperation, SyncReport, SyncResult, SyncStage,
)
from .services import ApiErrorKind, BaseCalendarService, GoogleCalendarService
from .source import LocalSourceReader, SourceUnavailable

logger = logging.getLogger(__name__)


class RoomSyncFailed(Exception):
    """A room cycle stopped at ``stage``."""

    def __init__(self, stage: SyncStage, reason: str):
        super().__init__(reason)
        self.stage = stage
        self.reason = reason


def is_unchanged(metadata: SyncMetadata, version: SourceVersion) -> bool:
    """Whether a room's source is unchanged since its last successful sync.

    A matching digest wins over a newer modification time; a differing digest
    wins over an older one. Without digests the modification time decides.
    """
    if metadata.last_synced_at is None:
        return False
    if metadata.source_digest and version.digest:
        return metadata.source_digest == version.digest
    return version.modified_at <= metadata.last_synced_at


class SyncEngine:
    """Runs sync cycles for rooms, several rooms at a time."""

    def __init__(
        self,
        settings: Settings,
        service: Optional[BaseCalendarService] = None,
        store: Optional[SyncMetadataStore] = None,
        reader: Optional[LocalSourceReader] = None,
        db_manager: Optional[DatabaseManager] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            service: Remote calendar service (Google Calendar by default)
            store: Metadata store (database-backed by default)
            reader: Local source reader
            db_manager: Database manager used for state and run history
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.store = store or SyncMetadataStore(self.db_manager)
        self.reader = reader or LocalSourceReader(settings)
        self.service = service or GoogleCalendarService(settings)
        self.logger = logger.getChild('sync_engine')

        self.room_stages: Dict[str, SyncStage] = {}
        self.last_report: Optional[SyncReport] = None
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._stop_requested = False
        self._service_authenticated = False

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the database and authenticate the remote service."""
        self.db_manager.init_db()
        await self._authenticate_service()
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Clean up resources."""
        await self.service.close()
        self.logger.info("Sync engine cleaned up")

    async def _authenticate_service(self) -> None:
        await self.service.authenticate()
        self._service_authenticated = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Ask running cycles to wind down.

        In-flight calls finish, no new room or operation starts, and
        operations already committed are persisted.
        """
        if not self._stop_requested:
            self.logger.info("Stop requested, finishing in-flight work")
        self._stop_requested = True

    def eligible_rooms(self, rooms: Optional[List[RoomConfig]] = None) -> List[RoomConfig]:
        """Rooms that can be synced: enabled and with a calendar ID."""
        eligible = []
        for room in rooms if rooms is not None else load_rooms(self.settings):
            if not room.enabled:
                self.logger.info(f"[{room.room_id}] room disabled, skipping")
            elif not room.calendar_id:
                self.logger.info(f"[{room.room_id}] no calendarId configured, skipping")
            else:
                eligible.append(room)
        return eligible

    def _room_lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self._room_locks:
            self._room_locks[room_id] = asyncio.Lock()
        return self._room_locks[room_id]

    def _set_stage(self, room_id: str, stage: SyncStage) -> None:
        self.room_stages[room_id] = stage
        self.logger.debug(f"[{room_id}] stage -> {stage.value}")

    async def sync_rooms(
        self,
        rooms: Optional[List[RoomConfig]] = None,
        *,
        dry_run: bool = False,
        force: bool = False,
    ) -> SyncReport:
        """Run one sync cycle for each room.

        Args:
            rooms: Rooms to sync (all configured rooms when omitted)
            dry_run: Compute and report changes without writing anything
            force: Sync even rooms whose source is unchanged

        Returns:
            Report with one entry per room that was started

        Raises:
            AuthenticationError: If the remote service rejects the credentials
        """
        if not self._service_authenticated:
            await self._authenticate_service()

        targets = self.eligible_rooms(rooms)
        report = SyncReport(dry_run=dry_run)
        session_id = self._start_history(report)
        self.logger.info(
            f"Starting sync run {report.sync_id} for {len(targets)} rooms (dry_run={dry_run})"
        )

        semaphore = asyncio.Semaphore(self.settings.sync_config.max_concurrent_rooms)

        async def worker(room: RoomConfig) -> Optional[RoomSyncResult]:
            async with semaphore:
                if self._stop_requested:
                    self.logger.info(f"[{room.room_id}] not started, stop requested")
                    return None
                result = await self.sync_room(room, dry_run=dry_run, force=force)
                self._record_room(session_id, result)
                return result

        results = await asyncio.gather(*(worker(room) for room in targets))
        report.rooms = [r for r in results if r is not None]
        report.completed_at = datetime.now(pytz.UTC)
        self._complete_history(session_id, report)
        self.last_report = report

        self.logger.info(
            f"Sync run {report.sync_id} finished: {len(report.rooms)} rooms, "
            f"{len(report.failed_rooms)} failed"
        )
        return report

    async def sync_room(
        self, room: RoomConfig, *, dry_run: bool = False, force: bool = False
    ) -> RoomSyncResult:
        """Run one cycle for a room; a busy room waits for its running cycle."""
        result = RoomSyncResult(
            room_id=room.room_id,
            room_name=room.name,
            status=RoomStatus.SYNCED,
            dry_run=dry_run,
        )
        async with self._room_lock(room.room_id):
            try:
                await self._run_cycle(room, result, dry_run=dry_run, force=force)
                self._set_stage(room.room_id, SyncStage.IDLE)
            except RoomSyncFailed as e:
                self._fail(result, e.stage, e.reason)
            except Exception as e:
                stage = self.room_stages.get(room.room_id, SyncStage.IDLE)
                self.logger.exception(f"[{room.room_id}] unexpected error during {stage.value}")
                self._fail(result, stage, f"unexpected error: {e}")
        self.logger.info(f"[{room.room_id}] {result.summary()}")
        return result

    def _fail(self, result: RoomSyncResult, stage: SyncStage, reason: str) -> None:
        result.status = RoomStatus.FAILED
        result.stage = stage
        result.reason = reason
        self.room_stages[result.room_id] = SyncStage.FAILED
        self.logger.error(f"[{result.room_id}] failed during {stage.value}: {reason}")

    async def _run_cycle(
        self, room: RoomConfig, result: RoomSyncResult, *, dry_run: bool, force: bool
    ) -> None:
        room_id = room.room_id
        cycle_started = datetime.now(pytz.UTC)

        self._set_stage(room_id, SyncStage.CHECKING_CHANGE)
        try:
            metadata = self.store.load_metadata(room_id)
        except MetadataError as e:
            raise RoomSyncFailed(SyncStage.CHECKING_CHANGE, str(e))
        try:
            local_events, version = self.reader.read_local_events(room)
        except SourceUnavailable as e:
            raise RoomSyncFailed(SyncStage.CHECKING_CHANGE, f"source unavailable: {e.reason}")

        if not force and is_unchanged(metadata, version):
            result.status = RoomStatus.SKIPPED_UNCHANGED
            return

        self._set_stage(room_id, SyncStage.FETCHING)
        listing = await self.service.list_events(room)
        if not listing.ok:
            raise RoomSyncFailed(SyncStage.FETCHING, f"listing remote events failed: {listing.error}")
        remote_events = listing.value

        self._set_stage(room_id, SyncStage.DIFFING)
        diff = compute_diff(
            local_events,
            remote_events,
            metadata,
            room_id,
            orphan_policy=self.settings.sync_config.orphan_policy,
            uid_domain=self.settings.sync_config.uid_domain,
        )
        result.unchanged = len(diff.matched) - len(diff.to_update)

        if dry_run:
            result.created = len(diff.to_create)
            result.updated = len(diff.to_update)
            result.deleted = len(diff.to_delete)
            self._log_plan(room_id, diff)
            return

        # Drop links to remote events that no longer exist, adopt iCalUID matches
        remote_ids = {r.remote_id for r in remote_events}
        mapping = {
            uid: remote_id for uid, remote_id in metadata.local_to_remote_id.items()
            if remote_id in remote_ids
        }
        pruned = len(metadata.local_to_remote_id) - len(mapping)
        if pruned:
            self.logger.info(f"[{room_id}] pruned {pruned} mappings to vanished remote events")
        mapping.update(diff.matched)

        self._set_stage(room_id, SyncStage.APPLYING)
        try:
            completed = await self._apply(room, diff, mapping, result)
        except Exception:
            self._save_links(room_id, metadata, mapping)
            raise

        self._set_stage(room_id, SyncStage.PERSISTING)
        clean = completed and not result.failed_operations
        new_metadata = SyncMetadata(
            last_synced_at=cycle_started if clean else metadata.last_synced_at,
            source_digest=version.digest if clean else metadata.source_digest,
            local_to_remote_id=mapping,
        )
        try:
            self.store.save_metadata(room_id, new_metadata)
        except WriteFailed as e:
            raise RoomSyncFailed(SyncStage.PERSISTING, str(e))

        if not completed:
            result.reason = "stopped before all operations ran; sync time not advanced"
        elif result.failed_operations:
            result.reason = (
                f"{len(result.failed_operations)} operations failed; sync time not advanced"
            )

    def _save_links(self, room_id: str, metadata: SyncMetadata, mapping: Dict[str, str]) -> None:
        """Keep links for operations that committed before an apply error."""
        try:
            self.store.save_metadata(room_id, SyncMetadata(
                last_synced_at=metadata.last_synced_at,
                source_digest=metadata.source_digest,
                local_to_remote_id=mapping,
            ))
        except WriteFailed as e:
            self.logger.error(f"[{room_id}] could not save event links after apply error: {e}")

    async def _apply(
        self,
        room: RoomConfig,
        diff: SyncDiff,
        mapping: Dict[str, str],
        result: RoomSyncResult,
    ) -> bool:
        """Apply creates, then updates, then deletes.

        ``mapping`` is updated as each operation commits.

        Returns:
            False if a stop request cut the run short
        """
        room_id = room.room_id

        for event in diff.to_create:
            if self._stop_requested:
                return False
            response = await self.service.create_event(room, event)
            if response.ok:
                mapping[event.uid] = response.value.remote_id
                result.created += 1
                self.logger.info(f"[{room_id}] created {event.uid} ({event.title})")
            else:
                self.logger.error(f"[{room_id}] failed to create {event.uid}: {response.error}")
            result.results.append(SyncResult(
                operation=SyncOperation.CREATE,
                uid=event.uid,
                remote_id=response.value.remote_id if response.ok else None,
                success=response.ok,
                error_message=None if response.ok else str(response.error),
                event_summary=event.title,
            ))

        for update in diff.to_update:
            if self._stop_requested:
                return False
            event = update.event
            response = await self.service.update_event(room, update.remote_id, event)
            if response.ok:
                mapping[event.uid] = update.remote_id
                result.updated += 1
                self.logger.info(f"[{room_id}] updated {event.uid} ({event.title})")
            else:
                if response.error.kind == ApiErrorKind.NOT_FOUND and mapping.get(event.uid) == update.remote_id:
                    # Recreated on the next cycle
                    del mapping[event.uid]
                self.logger.error(f"[{room_id}] failed to update {event.uid}: {response.error}")
            result.results.append(SyncResult(
                operation=SyncOperation.UPDATE,
                uid=event.uid,
                remote_id=update.remote_id,
                success=response.ok,
                error_message=None if response.ok else str(response.error),
                event_summary=event.title,
            ))

        for deletion in diff.to_delete:
            if self._stop_requested:
                return False
            response = await self.service.delete_event(room, deletion.remote_id)
            if response.ok:
                if deletion.uid and mapping.get(deletion.uid) == deletion.remote_id:
                    del mapping[deletion.uid]
                result.deleted += 1
                self.logger.info(
                    f"[{room_id}] deleted {deletion.remote_id} ({deletion.title}, {deletion.reason})"
                )
            else:
                self.logger.error(
                    f"[{room_id}] failed to delete {deletion.remote_id}: {response.error}"
                )
            result.results.append(SyncResult(
                operation=SyncOperation.DELETE,
                uid=deletion.uid,
                remote_id=deletion.remote_id,
                success=response.ok,
                error_message=None if response.ok else str(response.error),
                event_summary=deletion.title,
            ))

        return True

    def _log_plan(self, room_id: str, diff: SyncDiff) -> None:
        for event in diff.to_create:
            self.logger.info(f"[{room_id}] DRY RUN: would create {event.uid} ({event.title})")
        for update in diff.to_update:
            self.logger.info(f"[{room_id}] DRY RUN: would update {update.remote_id} ({update.event.title})")
        for deletion in diff.to_delete:
            self.logger.info(
                f"[{room_id}] DRY RUN: would delete {deletion.remote_id} "
                f"({deletion.title}, {deletion.reason})"
            )

    def _start_history(self, report: SyncReport):
        try:
            with self.db_manager.get_session() as session:
                sync_session = self.db_manager.create_sync_session(session, dry_run=report.dry_run)
                report.sync_id = sync_session.id
                return sync_session.id
        except SQLAlchemyError as e:
            self.logger.warning(f"Could not record sync run start: {e}")
            return None

    def _record_room(self, session_id, result: RoomSyncResult) -> None:
        if session_id is None:
            return
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.record_room_run(session, session_id, result)
        except SQLAlchemyError as e:
            self.logger.warning(f"[{result.room_id}] could not record room run: {e}")

    def _complete_history(self, session_id, report: SyncReport) -> None:
        if session_id is None:
            return
        status = 'failed' if report.failed_rooms else 'completed'
        error_message = "; ".join(
            f"{r.room_id}: {r.reason}" for r in report.failed_rooms
        ) or None
        try:
            with self.db_manager.get_session() as session:
                self.db_manager.complete_sync_session(
                    session, session_id, report, status=status, error_message=error_message
                )
        except SQLAlchemyError as e:
            self.logger.warning(f"Could not record sync run completion: {e}")

    def get_sync_status(self) -> Dict[str, Any]:
        """Get current sync status and recent run history.

        Returns:
            Dictionary with per-room state and recent sessions
        """
        with self.db_manager.get_session() as session:
            rooms = []
            for room in load_rooms(self.settings):
                overview = self.db_manager.get_room_overview(session, room.room_id)
                overview['name'] = room.name
                overview['stage'] = self.room_stages.get(room.room_id, SyncStage.IDLE).value
                rooms.append(overview)

            recent_sessions = []
            for sess in self.db_manager.get_recent_sync_sessions(session, limit=5):
                recent_sessions.append({
                    'id': str(sess.id),
                    'started_at': sess.started_at.isoformat(),
                    'completed_at': sess.completed_at.isoformat() if sess.completed_at else None,
                    'status': sess.status,
                    'dry_run': sess.dry_run,
                    'rooms': {
                        'synced': sess.rooms_synced,
                        'skipped': sess.rooms_skipped,
                        'failed': sess.rooms_failed,
                    },
                })

        return {'rooms': rooms, 'recent_sessions': recent_sessions}
