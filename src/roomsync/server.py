import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Tuple

import pytz
from fastapi import FastAPI, HTTPException, Response

from . import __version__
from .config import Settings, get_room, load_settings
from .models import RoomConfig
from .services import BaseCalendarService
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 60


class SyncRuntime:
    """Background sync loop: runs on an interval or when triggered."""

    def __init__(self, settings: Settings, service: Optional[BaseCalendarService] = None):
        self.settings = settings
        self.engine = SyncEngine(settings, service=service)
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = settings.sync_config.sync_interval_minutes * 60
        self._requests: List[Tuple[Optional[List[RoomConfig]], bool]] = []
        self._initialized = False

    async def run(self):
        while self.running:
            try:
                # Wait for either trigger or interval timeout
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()
                if not self.running:
                    break

                rooms, force = self._take_requests()
                if not self._initialized:
                    await self.engine.initialize()
                    self._initialized = True
                await self.engine.sync_rooms(rooms, force=force)
                self.last_sync = datetime.now(pytz.UTC)
            except Exception:
                # Avoid crash loop
                logger.exception("Background sync run failed")
                await asyncio.sleep(2)

    def _take_requests(self) -> Tuple[Optional[List[RoomConfig]], bool]:
        """Merge pending trigger requests into one run."""
        requests, self._requests = self._requests, []
        if not requests:
            return None, False
        force = any(f for _, f in requests)
        if any(rooms is None for rooms, _ in requests):
            return None, force
        merged = {room.room_id: room for rooms, _ in requests for room in rooms}
        return list(merged.values()), force

    def signal(self, rooms: Optional[List[RoomConfig]] = None, force: bool = False):
        self._requests.append((rooms, force))
        if not self.trigger.is_set():
            self.trigger.set()

    async def shutdown(self):
        self.running = False
        self.engine.request_stop()
        self.trigger.set()
        if self.sync_task:
            done, _ = await asyncio.wait([self.sync_task], timeout=SHUTDOWN_GRACE_SECONDS)
            if not done:
                logger.warning("Sync loop did not stop in time, cancelling")
                self.sync_task.cancel()
        if self._initialized:
            await self.engine.cleanup()


def create_app(
    settings: Optional[Settings] = None, service: Optional[BaseCalendarService] = None
) -> FastAPI:
    """Build the HTTP app; the sync loop starts with the app and stops with it."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or load_settings()
        app.state.settings = app_settings
        app.state.runtime = SyncRuntime(app_settings, service=service)
        app.state.runtime.sync_task = asyncio.create_task(app.state.runtime.run())
        yield
        await app.state.runtime.shutdown()

    app = FastAPI(title="roomsync", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health():
        rt: SyncRuntime = app.state.runtime
        return {
            "ok": True,
            "last_sync": rt.last_sync.isoformat() if rt.last_sync else None,
            "interval_seconds": rt.loop_interval_seconds,
        }

    @app.get("/status")
    async def status():
        rt: SyncRuntime = app.state.runtime
        report = rt.engine.last_report
        return {
            "stages": {room: stage.value for room, stage in rt.engine.room_stages.items()},
            "last_report": report.model_dump(mode="json") if report else None,
        }

    @app.post("/sync", status_code=202)
    async def trigger_sync(room: Optional[str] = None, force: bool = False):
        rt: SyncRuntime = app.state.runtime
        rooms = None
        if room is not None:
            room_config = get_room(rt.settings, room)
            if room_config is None:
                raise HTTPException(status_code=400, detail=f"unknown room: {room}")
            rooms = [room_config]
        rt.signal(rooms, force=force)
        return {"accepted": True, "room": room, "force": force}

    return app


app = create_app()
