"""Shared fixtures: an in-memory provider and a manager wired to it."""

import pytest

from botalto.config import Config
from botalto.manager import BotManager
from botalto.sandbox import SandboxConfig, SandboxExecutor

from fakes import FakeProvider


@pytest.fixture
def config(tmp_path):
    return Config(
        config_dir=tmp_path,
        settings={
            "executor": {"timeout": 5, "max_concurrent": 4},
            "provider": {"retry_backoff": 0.01},
            "log_dir": str(tmp_path / "logs"),
        },
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def executor(config):
    return SandboxExecutor(SandboxConfig.from_config(config))


@pytest.fixture
def manager(provider, executor, config):
    return BotManager(provider=provider, executor=executor, config=config)
