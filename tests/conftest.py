"""Shared fixtures for maestro tests."""

import logging

import pytest
import pytest_asyncio

from handoffs import ScriptedModes


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project with .maestro/config.yaml."""
    maestro_dir = tmp_path / ".maestro"
    maestro_dir.mkdir()

    (maestro_dir / "config.yaml").write_text("""\
modes_dir: .maestro/modes
router:
  retry_limit: 2
  dispatch_retry_limit: 1
  max_steps: 10
dispatch:
  backend: text_gen
  provider: anthropic
  model: claude-sonnet-4-5
  timeout_sec: 30
state:
  db_path: .maestro/state.db
  markdown_path: .maestro/workflow_state.md
notify:
  webhook_url: ""
  events:
    - workflow.blocked
logging:
  level: WARNING
""")
    return tmp_path


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from maestro.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from maestro.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def registry():
    from maestro.registry import DEFAULT_MODES, ModeRegistry
    return ModeRegistry(DEFAULT_MODES)


@pytest.fixture
def make_maestro(memory_db, registry):
    """Build a Maestro over the in-memory db whose modes answer from scripts."""
    from maestro.config import Config, RouterConfig
    from maestro.dispatcher import Dispatcher
    from maestro.router import Maestro
    from maestro.state import WorkflowStateStore

    def _make(scripts, workflow_id="wf-test", notifier=None, timeout_sec=5.0,
              markdown_path=None, **router):
        config = Config()
        config.router = RouterConfig(**router)
        modes = ScriptedModes(scripts)
        dispatcher = Dispatcher(registry, modes.backend_for, timeout_sec=timeout_sec)
        store = WorkflowStateStore(memory_db, workflow_id, markdown_path)
        return Maestro(registry, dispatcher, store, memory_db, config, notifier), modes

    return _make


@pytest.fixture(autouse=True)
def reset_maestro_logger():
    """Each test starts with a bare package logger."""
    yield
    logger = logging.getLogger("maestro")
    logger.setLevel(logging.NOTSET)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
