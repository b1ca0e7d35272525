import os
from pathlib import Path
from typing import Generator

import dotenv
import pytest

from range_transfer.config import Config
from range_transfer.config import get_config


@pytest.fixture(scope="session", autouse=True)
def _load_test_env() -> Generator[None, None, None]:
    """Load test environment variables from base + local env files."""
    project_root = Path(__file__).parents[2]
    dotenv.load_dotenv(project_root / ".env.defaults", override=True)
    dotenv.load_dotenv(project_root / ".env.test-local", override=True)
    os.environ["ENVIRONMENT"] = "test"
    yield


@pytest.fixture
def config() -> Config:
    return get_config()
