from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time, so the test environment must be in place first.
_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="pgfleet-tests-"), "control.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["REDIS_URL"] = ""
os.environ["FAILOVER_EXECUTION_MODE"] = "inline"
os.environ["AUTH_ENABLED"] = "true"
os.environ["CREDENTIALS_REQUIRE_MFA"] = "true"
os.environ["FEDERATION_DELIVER_REQUESTS"] = "false"
os.environ["FEDERATION_PUBLIC_DOMAIN"] = "https://cp-local.test"
os.environ["ROTATION_API_KEY"] = ""

import pytest  # noqa: E402

from pgfleet.core.config import get_settings  # noqa: E402
from pgfleet.domain.models import Base  # noqa: E402
from pgfleet.persistence.db import engine  # noqa: E402
from pgfleet.services import locks  # noqa: E402
from pgfleet.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_control_plane_state() -> None:
    # Fresh schema per test keeps identity rows, epochs and alerts from leaking across cases.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    # In-process locks bind to the loop that first awaited them.
    locks._local_locks.clear()
    locks._local_owners.clear()
    reset_telemetry()
    yield
    await engine.dispose()
    get_settings.cache_clear()
