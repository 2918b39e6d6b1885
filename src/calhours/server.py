import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
import pytz

from .admin import NoUsersConfiguredError, SyncAdmin, create_sync_admin
from .config import Settings, load_settings
from .models import UserSyncStatus

logger = logging.getLogger(__name__)


class SyncRuntime:
    def __init__(self, admin: SyncAdmin, interval_seconds: int):
        self.admin = admin
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = interval_seconds

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
                await self.run_once()
            except NoUsersConfiguredError as e:
                self.last_error = str(e)
                logger.warning(f"Scheduled sync skipped: {e}")
            except Exception as e:
                # Avoid crash loop
                self.last_error = f"{type(e).__name__}: {e}"
                logger.exception("Scheduled sync failed")
                await asyncio.sleep(2)

    async def run_once(self):
        results = await self.admin.sync_all_users()
        self.last_sync = datetime.now(pytz.UTC)
        errors = [r.error for r in results if r.status == UserSyncStatus.ERROR]
        self.last_error = errors[-1] if errors else None
        return results

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()


def create_app(
    settings: Optional[Settings] = None,
    admin_factory: Callable[[Settings], SyncAdmin] = create_sync_admin,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the API app; the admin is created on startup so a missing generic task fails boot."""
    app = FastAPI(title="calhours", version="0.1.0")

    @app.on_event("startup")
    async def on_startup():
        app_settings = settings or load_settings()
        admin = admin_factory(app_settings)
        app.state.settings = app_settings
        app.state.admin = admin
        app.state.runtime = SyncRuntime(admin, app_settings.ingestion.sync_interval_minutes * 60)
        if start_scheduler:
            app.state.runtime.sync_task = asyncio.create_task(app.state.runtime.run())

    @app.on_event("shutdown")
    async def on_shutdown():
        runtime: SyncRuntime = app.state.runtime
        runtime.running = False
        runtime.signal()
        if runtime.sync_task:
            await asyncio.wait([runtime.sync_task], timeout=5)

    @app.get("/health")
    async def health():
        rt: SyncRuntime = app.state.runtime
        return {
            "ok": True,
            "last_sync": rt.last_sync.isoformat() if rt.last_sync else None,
            "last_error": rt.last_error,
            "interval_seconds": rt.loop_interval_seconds,
        }

    @app.post("/admin/sync/user")
    async def sync_user(email: str = Query(..., min_length=3), reset: bool = False):
        result = await app.state.admin.sync_one_user(email, reset=reset)
        body = result.model_dump(mode='json')
        if result.status == UserSyncStatus.ERROR:
            return JSONResponse(status_code=500, content=body)
        return body

    @app.post("/admin/sync/all")
    async def sync_all(reset: bool = False):
        try:
            results = await app.state.admin.sync_all_users(reset=reset)
        except NoUsersConfiguredError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return [r.model_dump(mode='json') for r in results]

    @app.post("/admin/sync/trigger", status_code=202)
    async def trigger():
        app.state.runtime.signal()
        return {"triggered": True}

    return app


app = create_app()
