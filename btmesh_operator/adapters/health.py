from typing import Callable, Optional
from aiohttp import web
from ..core.logger import get_logger

logger = get_logger("HealthServer")

class HealthServer:
    """
    Liveness/readiness endpoint for the orchestrator. Reports process
    health only, no reconciliation detail.
    """
    def __init__(self, check: Callable[[], bool], port: int = 8080, host: str = "0.0.0.0"):
        self.check = check
        self.port = port
        self.host = host
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        if self.check():
            return web.json_response({"status": "ok"})
        return web.json_response({"status": "unhealthy"}, status=503)

    async def start(self):
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("health_server_started", port=self.port)

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
