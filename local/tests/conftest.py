"""Pytest configuration and fixtures."""
import pytest
import tempfile
from pathlib import Path
from httpx import AsyncClient, ASGITransport
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from edgehost_local.app import create_app
from edgehost_local.models import ScriptConfig
from edgehost_local.models.database import KVDatabase
from edgehost_local.services import ExternalIpCache, ScriptRunner

SCRIPTS_DIR = Path(__file__).parent / "fixtures" / "scripts"

TEST_IP = "203.0.113.7"


def script_config(name: str, kind: str = "module", **kwargs) -> ScriptConfig:
    """Config for one of the fixture scripts."""
    return ScriptConfig(name=name, path=SCRIPTS_DIR / f"{name}.py", kind=kind, **kwargs)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
async def test_db(temp_dir):
    """Create a test KV database."""
    db = KVDatabase(temp_dir / "kv.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def external_ip():
    """An IP cache that never goes to the network."""
    return ExternalIpCache(value=TEST_IP)


async def start_runner(script: ScriptConfig, **kwargs) -> ScriptRunner:
    runner = ScriptRunner(script, in_process=True, **kwargs)
    await runner.start()
    return runner


@pytest.fixture
def make_client(external_ip):
    """Build an async client for an app serving an already started runner.

    ASGITransport does not run the lifespan, so the runner is started and
    closed by the caller.
    """

    def _make(runner, script: ScriptConfig) -> AsyncClient:
        app = create_app(runner, external_ip, script=script, watch=False)
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _make


@pytest.fixture
async def hello_client(make_client):
    """Client for the hello script, run in-process."""
    script = script_config("hello", bindings={"GREETING": {"value": "hi from ${localPort}"}})
    runner = await start_runner(script)
    async with make_client(runner, script) as client:
        yield client
    await runner.close()
