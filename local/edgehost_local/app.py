"""Main FastAPI application for edgehost local."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api import router
from .config import Settings, get_script, load_config, resolve_credential
from .errors import EdgeHostError, ExecutorInitError
from .models import ScriptConfig
from .services import ExternalIpCache, HotReloader, ScriptRunner

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    runner: ScriptRunner,
    external_ip: ExternalIpCache,
    *,
    script: ScriptConfig,
    watch: bool = True,
) -> FastAPI:
    """Build the application serving one script.

    Docs and OpenAPI routes are disabled so every path reaches the script.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.startup_error = None
        try:
            await runner.start()
        except ExecutorInitError as e:
            logger.error(f"Failed to start {script.path}: {e}")
            app.state.startup_error = e
            await runner.close()
            raise

        reloader = None
        if watch:
            reloader = HotReloader(script.path, runner.reload)
            reloader.start()
        logger.info(f"Local server running on http://localhost:{script.local_port}")
        try:
            yield
        finally:
            if reloader is not None:
                await reloader.stop()
            await runner.close()
            logger.info("Local server shut down")

    app = FastAPI(
        title="edgehost local",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.runner = runner
    app.state.external_ip = external_ip
    app.state.script = script
    app.state.startup_error = None
    app.include_router(router)
    return app


def build_app(
    script_name: str,
    settings: Settings,
    *,
    port: Optional[int] = None,
    in_process: bool = False,
    watch: bool = True,
) -> FastAPI:
    """Load the project config and wire an application for one script."""
    config = load_config(settings.config_path)
    script = get_script(config, script_name)
    if port is not None:
        script.local_port = port
    credential = resolve_credential(config, settings)
    logger.info(f"KV namespaces: {'remote API' if credential else f'local store at {settings.kv_db_path}'}")

    runner = ScriptRunner(
        script,
        credential=credential,
        in_process=in_process,
        local_db_path=settings.kv_db_path,
    )
    return create_app(runner, ExternalIpCache(value=settings.external_ip), script=script, watch=watch)


def run_server(
    script_name: str,
    config_path: Optional[Path] = None,
    port: Optional[int] = None,
    in_process: bool = False,
) -> int:
    """Run the server using uvicorn. Returns the process exit code."""
    settings = Settings(config_path=config_path) if config_path is not None else Settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    try:
        app = build_app(script_name, settings, port=port, in_process=in_process)
    except EdgeHostError as e:
        logger.error(str(e))
        return 1

    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.host,
            port=app.state.script.local_port,
            log_level=settings.log_level,
            ws="websockets",
            lifespan="on",
        )
    )
    server.run()
    if app.state.startup_error is not None:
        return 1
    return 0
