"""Optional HTTP status endpoint for monitoring a running instance."""

import logging
from typing import Optional

from aiohttp import web, web_runner

from .activation_controller import ActivationController


logger = logging.getLogger(__name__)


def create_status_app(controller: Optional[ActivationController]) -> web.Application:
    """Build the aiohttp application serving /status and /health."""

    async def get_status(request):
        """Get lifecycle status as JSON."""
        if controller and controller.is_running:
            return web.json_response({
                "status": "running",
                "servernap": controller.get_status(),
                "config": controller.get_config_info()
            })
        return web.json_response({
            "status": "stopped",
            "message": "ServerNap is not running"
        }, status=503)

    async def health_check(request):
        """Simple health check endpoint."""
        return web.json_response({"status": "healthy"})

    app = web.Application()
    app.router.add_get('/status', get_status)
    app.router.add_get('/health', health_check)
    app.router.add_get('/', get_status)
    return app


async def start_status_server(controller: Optional[ActivationController], port: int,
                              host: str = '0.0.0.0') -> web_runner.AppRunner:
    """Start the status server; the caller cleans up the returned runner."""
    runner = web_runner.AppRunner(create_status_app(controller))
    await runner.setup()

    site = web_runner.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Status server started on port {port}")
    return runner
