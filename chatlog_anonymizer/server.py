from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .exceptions import DeliveryError
from .models import DeliveryTarget
from .worker import Worker


def create_app(worker: Worker, watch: bool = True) -> FastAPI:
    """FastAPI app for worker health and target test calls. Lifespan runs the watcher."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if watch:
            worker.start()
        yield
        await worker.stop()

    app = FastAPI(title=worker.settings.app_name, lifespan=lifespan)
    app.state.worker = worker

    @app.get("/health")
    def health_check():
        return JSONResponse(content={
            "status": "healthy",
            "version": __version__,
            "inFlight": len(worker.processor.in_flight),
            "watching": worker.watcher.running,
        })

    @app.post("/targets/test")
    async def test_target(target: DeliveryTarget):
        """Send a synthetic, PII-free payload to a target through the real delivery path."""
        if not target.enabled:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "error": {"code": "TARGET_DISABLED", "message": "Target is disabled"}},
            )
        try:
            result = await worker.delivery.test_target(target)
        except DeliveryError as e:
            return JSONResponse(
                status_code=502,
                content={"ok": False, "error": {"code": e.code, "message": e.safe_message}},
            )
        return JSONResponse(content={"ok": True, "data": result})

    return app
