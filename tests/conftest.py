import sys
from pathlib import Path

import pytest

# Ensure src is on path for direct imports during testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


CATALOG_YAML = """version: 1

server:
  name: Tollgate Test
  version: 0.0.1

security:
  sanitize_output: true
  max_output_length: 200
  pii_placeholder: "[REDACTED]"

operations:
  echo:
    cost: 1
    description: Return the input payload unchanged.
  count:
    cost: 2
  fail:
    cost: 3
  contact:
    cost: 1
  retired:
    cost: 1
    enabled: false
"""


@pytest.fixture
def db(tmp_path, monkeypatch):
    db_path = tmp_path / "tollgate.db"
    monkeypatch.setenv("TOLLGATE_DB_PATH", str(db_path))
    monkeypatch.delenv("TOLLGATE_PG_DSN", raising=False)
    from tollgate.daemon.db import init_db

    init_db()
    return db_path


@pytest.fixture
def catalog(tmp_path):
    from tollgate.daemon.utils.config_loader import ConfigLoader

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "operations.yaml").write_text(CATALOG_YAML)

    loader = ConfigLoader()
    loader.config_dir = config_dir
    loader.config_file = config_dir / "operations.yaml"
    loader.load_config()
    return loader


@pytest.fixture
def make_identity(db):
    from tollgate.daemon.auth.identities import create_identity, deactivate_identity

    def _make(balance: int = 10, *, identity_id: str | None = None, deactivated: bool = False):
        identity, api_key = create_identity(f"{identity_id or 'user'}@example.com", balance, identity_id)
        if deactivated:
            deactivate_identity(identity.identity_id)
        return identity, api_key

    return _make


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def catalog_yaml():
    return CATALOG_YAML
