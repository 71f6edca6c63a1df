"""Unit tests for the startup orchestrator."""

import asyncio

import pytest

from conftest import FakeTransport
from eliza_orchestrator.models import AiProvider, StartupStage, StartupStatus, UserConfig
from eliza_orchestrator.utils.exceptions import (
    InvalidArgumentError,
    UserConfigInvalidError,
)


async def _wait_for_stage(orchestrator, stage, attempts=500):
    for _ in range(attempts):
        if orchestrator.status.stage is stage:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"stage {stage.value} not reached, at {orchestrator.status.stage.value}")


def test_stage_progression_rules():
    """Test stages only move forward and Error is terminal."""
    assert StartupStage.INITIALIZING.can_advance_to(StartupStage.DETECTING_RUNTIME)
    assert not StartupStage.STARTING_AGENT.can_advance_to(StartupStage.STARTING_DATABASE)
    assert StartupStage.DOWNLOADING_MODELS.can_advance_to(StartupStage.ERROR)
    assert not StartupStage.READY.can_advance_to(StartupStage.ERROR)
    assert not StartupStage.ERROR.can_advance_to(StartupStage.INITIALIZING)
    assert StartupStatus(stage=StartupStage.ERROR).can_retry


@pytest.mark.parametrize(
    "config",
    [
        UserConfig(ai_provider=AiProvider.OPENAI),
        UserConfig(ai_provider=AiProvider.ANTHROPIC, api_key=""),
    ],
)
def test_hosted_provider_requires_key(orchestrator, config):
    """Test OpenAI and Anthropic need a key."""
    with pytest.raises(UserConfigInvalidError):
        orchestrator.submit_user_config(config)
    assert orchestrator.user_config is None


def test_key_from_environment_is_enough(orchestrator_factory):
    """Test a host key satisfies validation."""
    orchestrator = orchestrator_factory(openai_api_key="sk-env")

    orchestrator.submit_user_config(UserConfig(ai_provider=AiProvider.OPENAI))

    assert orchestrator.user_config.ai_provider is AiProvider.OPENAI


@pytest.mark.asyncio
async def test_cold_start_reaches_ready(orchestrator, run_startup, events):
    """Test the full sequence with monotonic stages."""
    status = await run_startup(orchestrator)

    assert status.stage is StartupStage.READY
    assert status.progress == 100
    assert status.container_statuses == {
        "postgres": "running",
        "ollama": "running",
        "agent": "running",
    }

    result = await events.poll(limit=10000)
    stages = [e["payload"]["stage"] for e in result["events"] if e["event"] == "startup-status"]
    orders = [StartupStage(s).order for s in stages]
    assert orders == sorted(orders)
    assert "PromptingConfig" in stages
    assert "DownloadingModels" in stages
    assert orchestrator.realtime.is_connected()
    assert orchestrator.realtime_url == "ws://127.0.0.1:7777"


@pytest.mark.asyncio
async def test_config_is_used_when_submitted(orchestrator_factory, run_startup, fake_runtime):
    """Test a config submitted during the prompt is applied."""
    orchestrator = orchestrator_factory(config_prompt_timeout_s=5)
    orchestrator.start_initialization()
    await _wait_for_stage(orchestrator, StartupStage.PROMPTING_CONFIG)

    orchestrator.submit_user_config(
        UserConfig(ai_provider=AiProvider.OPENAI, api_key="sk-user", use_local_ollama=False)
    )
    status = await asyncio.wait_for(orchestrator.wait(), timeout=10)

    assert status.stage is StartupStage.READY
    assert "ollama" not in status.container_statuses
    assert "eliza-ollama" not in fake_runtime.containers
    agent_args = fake_runtime.containers["eliza-agent"]["args"]
    assert "OPENAI_API_KEY=sk-user" in agent_args
    assert "MODEL_PROVIDER=openai" in agent_args


@pytest.mark.asyncio
async def test_abort_during_prompt(orchestrator_factory, events):
    """Test abort ends in Error with a cancelled kind."""
    orchestrator = orchestrator_factory(config_prompt_timeout_s=30)
    orchestrator.start_initialization()
    await _wait_for_stage(orchestrator, StartupStage.PROMPTING_CONFIG)

    status = await orchestrator.abort()

    assert status.stage is StartupStage.ERROR
    assert status.error["kind"] == "Cancelled"
    assert status.can_retry
    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_abort_stops_started_containers(orchestrator_factory, agent_server, fake_runtime):
    """Test containers started before an abort are stopped."""
    agent_server.agent_health = {"status": "starting"}
    orchestrator = orchestrator_factory()
    orchestrator.start_initialization()
    await _wait_for_stage(orchestrator, StartupStage.WAITING_FOR_HEALTH)

    status = await orchestrator.abort()

    assert status.stage is StartupStage.ERROR
    assert all(c["state"] == "exited" for c in fake_runtime.containers.values())
    assert status.container_statuses["agent"] == "stopped"


@pytest.mark.asyncio
async def test_retry_only_from_error(orchestrator):
    """Test retry is refused unless the last run failed."""
    with pytest.raises(InvalidArgumentError):
        orchestrator.retry()


@pytest.mark.asyncio
async def test_retry_after_missing_image(orchestrator, run_startup, fake_runtime, occupied_ports):
    """Test retry resumes with already-running dependencies."""
    fake_runtime.images.discard("eliza-agent-server:latest")

    failed = await run_startup(orchestrator)
    assert failed.stage is StartupStage.ERROR
    assert failed.failed_container == "eliza-agent"
    postgres_id = fake_runtime.containers["eliza-postgres"]["id"]

    fake_runtime.images.add("eliza-agent-server:latest")
    orchestrator.retry()
    status = await asyncio.wait_for(orchestrator.wait(), timeout=10)

    assert status.stage is StartupStage.READY
    assert fake_runtime.containers["eliza-postgres"]["id"] == postgres_id
    postgres_runs = [c for c in fake_runtime.commands("run") if "eliza-postgres" in c]
    assert len(postgres_runs) == 1

    assert {5432, 11434} <= occupied_ports
    assert orchestrator.ports["postgres"] == 5432
    assert orchestrator.ports["ollama"] == 11434
    postgres = orchestrator.container_manager.get_record("eliza-postgres").to_dict()
    ollama = orchestrator.container_manager.get_record("eliza-ollama").to_dict()
    assert postgres["ports"] == ["127.0.0.1:5432->5432"]
    assert ollama["ports"] == ["127.0.0.1:11434->11434"]
    assert "POSTGRES_PORT=5432" in fake_runtime.containers["eliza-agent"]["args"]


@pytest.mark.asyncio
async def test_start_initialization_is_idempotent(orchestrator, run_startup, fake_runtime):
    """Test a second start while running or Ready does nothing."""
    orchestrator.start_initialization()
    orchestrator.start_initialization()
    await asyncio.wait_for(orchestrator.wait(), timeout=10)
    orchestrator.start_initialization()

    assert not orchestrator.is_running
    assert len(fake_runtime.commands("version")) == 1


@pytest.mark.asyncio
async def test_optional_ollama_failure_is_skipped(orchestrator_factory, fake_runtime):
    """Test a failing Ollama does not block a hosted provider."""
    fake_runtime.run_failures["eliza-ollama"] = "Error: out of memory"
    orchestrator = orchestrator_factory(config_prompt_timeout_s=5)
    orchestrator.submit_user_config(
        UserConfig(ai_provider=AiProvider.ANTHROPIC, api_key="sk-ant", use_local_ollama=True)
    )

    orchestrator.start_initialization()
    status = await asyncio.wait_for(orchestrator.wait(), timeout=10)

    assert status.stage is StartupStage.READY
    assert status.container_statuses["ollama"] == "failed"


@pytest.mark.asyncio
async def test_required_ollama_failure_fails_startup(orchestrator, run_startup, fake_runtime):
    """Test a failing Ollama stops startup for the Ollama provider."""
    fake_runtime.run_failures["eliza-ollama"] = "Error: out of memory"

    status = await run_startup(orchestrator)

    assert status.stage is StartupStage.ERROR
    assert status.failed_container == "eliza-ollama"
    assert status.error["kind"] == "RuntimeCommandFailed"
    assert "eliza-agent" not in fake_runtime.containers


@pytest.mark.asyncio
async def test_realtime_failure_is_degraded(orchestrator, run_startup):
    """Test Ready is reached without a realtime connection."""
    FakeTransport.fail_open = True

    status = await run_startup(orchestrator)

    assert status.stage is StartupStage.READY
    assert status.realtime_degraded is True


@pytest.mark.asyncio
async def test_spec_for_unknown_container(orchestrator):
    """Test specs are only built for catalogue containers."""
    with pytest.raises(InvalidArgumentError):
        await orchestrator.spec_for("redis")


@pytest.mark.asyncio
async def test_running_dependencies_keep_published_ports(
    orchestrator, run_startup, fake_runtime, agent_server, occupied_ports
):
    """Test containers left running keep their host ports instead of new ones."""
    fake_runtime.seed_container("eliza-postgres", "pgvector/pgvector:pg16", [(5436, 5432)])
    fake_runtime.seed_container("eliza-ollama", "ollama/ollama:latest", [(11434, 11434)])
    assert {5436, 11434} <= occupied_ports

    status = await run_startup(orchestrator)

    assert status.stage is StartupStage.READY
    assert orchestrator.ports == {"postgres": 5436, "ollama": 11434, "agent": 7777}
    assert [c for c in fake_runtime.commands("run") if "eliza-postgres" in c] == []
    assert [c for c in fake_runtime.commands("run") if "eliza-ollama" in c] == []

    postgres = orchestrator.container_manager.get_record("eliza-postgres").to_dict()
    assert postgres["ports"] == ["127.0.0.1:5436->5432"]
    assert "POSTGRES_PORT=5436" in fake_runtime.containers["eliza-agent"]["args"]
    assert {r.url.port for r in agent_server.find("/api/tags")} == {11434}


class StalledFetcher:
    """Model fetcher whose download never finishes."""

    def __init__(self) -> None:
        self.cancelled = False

    async def ensure_models(self, models):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.mark.asyncio
async def test_required_failure_does_not_wait_for_other_gates(orchestrator, fake_runtime):
    """Test a failed postgres ends startup while models are still downloading."""
    fake_runtime.run_failures["eliza-postgres"] = "Error: no space left on device"
    fetcher = StalledFetcher()
    orchestrator._fetcher_factory = lambda base_url: fetcher

    orchestrator.start_initialization()
    status = await asyncio.wait_for(orchestrator.wait(), timeout=5)

    assert status.stage is StartupStage.ERROR
    assert status.failed_container == "eliza-postgres"
    assert status.error["kind"] == "RuntimeCommandFailed"
    assert "eliza-agent" not in fake_runtime.containers
    assert not any("eliza-ollama" in c for c in fake_runtime.commands("rm"))
    if "eliza-ollama" in fake_runtime.containers:
        assert fake_runtime.containers["eliza-ollama"]["state"] == "running"
