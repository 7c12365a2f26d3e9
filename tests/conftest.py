from pathlib import Path
from typing import Any, Callable

import pytest

from contract_builder.config import BuilderConfig
from contract_builder.orchestrator.service import BuildOrchestrator
from fakes import FakeSandboxProvider, FakeVolumeManager


@pytest.fixture
def sandbox() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def volumes() -> FakeVolumeManager:
    return FakeVolumeManager()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., BuilderConfig]:
    def factory(**overrides: Any) -> BuilderConfig:
        values: dict[str, Any] = {
            "images_path": tmp_path,
            "api_server_url": "http://api.test",
            "runtime": "local",
            "volume_backend": "directory",
            "max_build_duration": 30,
        }
        values.update(overrides)
        return BuilderConfig(**values)

    return factory


@pytest.fixture
def make_orchestrator(
    make_config: Callable[..., BuilderConfig],
    sandbox: FakeSandboxProvider,
    volumes: FakeVolumeManager,
) -> Callable[..., BuildOrchestrator]:
    def factory(**overrides: Any) -> BuildOrchestrator:
        pipeline = overrides.pop("pipeline", None)
        config = make_config(**overrides)
        if pipeline is None:
            return BuildOrchestrator(config, sandbox, volumes)
        return BuildOrchestrator(config, sandbox, volumes, pipeline=pipeline)

    return factory
