import logging
import threading
from dataclasses import replace
from pathlib import Path

from survivor_agent.application.config import RunnerConfig, load_config
from survivor_agent.application.services.progress_tracker import ProgressTracker
from survivor_agent.application.services.run_loop import RunLoop
from survivor_agent.domain.errors import ConfigError
from survivor_agent.domain.models.session import SessionRecord
from survivor_agent.infrastructure.inmemory.simulated_world import SimulatedWorld
from survivor_agent.infrastructure.item_catalog import CachingItemCatalog
from survivor_agent.infrastructure.jsonl_observer import JsonlObserver
from survivor_agent.infrastructure.progress_store import JsonProgressStore
from survivor_agent.infrastructure.session_store import JsonSessionStore
from survivor_agent.infrastructure.signer_bridge import (
    BridgeClient,
    BridgeIdentityProvider,
    BridgeItemCatalog,
    BridgeReader,
    BridgeWriter,
)


logger = logging.getLogger(__name__)

SIMULATED_ADDRESS = "0xsimulated"


def _build_observer(config: RunnerConfig) -> JsonlObserver:
    return JsonlObserver(config.storage.events_file, config.storage.milestones_file)


def _build_tracker(config: RunnerConfig, observer: JsonlObserver) -> ProgressTracker:
    store = JsonProgressStore(config.storage.progress_file, target_level=config.policy.target_level)
    return ProgressTracker(observer, target_level=config.policy.target_level, progress_store=store)


def _build_simulated_runner(config: RunnerConfig, stop_event: threading.Event | None, world: SimulatedWorld | None) -> RunLoop:
    world = world or SimulatedWorld(seed=config.adventurer_id)
    config = replace(config, adventurer_id=0)
    observer = _build_observer(config)
    # Simulated adventurers only exist in this process, so the session file is left alone.
    return RunLoop(
        config,
        session=SessionRecord(address=SIMULATED_ADDRESS),
        handles_factory=lambda session: (world, world),
        item_catalog=CachingItemCatalog(world),
        observer=observer,
        identity_provider=world,
        progress_tracker=_build_tracker(config, observer),
        stop_event=stop_event,
    )


def _build_bridge_runner(config: RunnerConfig, stop_event: threading.Event | None) -> RunLoop:
    session_store = JsonSessionStore(config.storage.session_file)
    session = session_store.load()
    if session is None:
        raise ConfigError(
            f"No usable session at {Path(config.storage.session_file)}; "
            "create one with the signer bridge before starting the agent"
        )
    if config.adventurer_id and session.adventurer_id != config.adventurer_id:
        session = session.with_adventurer(config.adventurer_id)

    def handles_factory(current: SessionRecord):
        bridge = BridgeClient(config.bridge)
        return BridgeReader(bridge), BridgeWriter(bridge)

    catalog_bridge = BridgeClient(config.bridge)
    observer = _build_observer(config)
    return RunLoop(
        config,
        session=session,
        handles_factory=handles_factory,
        item_catalog=CachingItemCatalog(BridgeItemCatalog(catalog_bridge)),
        observer=observer,
        identity_provider=BridgeIdentityProvider(catalog_bridge),
        session_store=session_store,
        progress_tracker=_build_tracker(config, observer),
        stop_event=stop_event,
    )


def create_runner(
    config: RunnerConfig | None = None,
    *,
    simulate: bool = False,
    stop_event: threading.Event | None = None,
    world: SimulatedWorld | None = None,
) -> RunLoop:
    config = config or load_config()
    if simulate and config.backend != "simulated":
        config = replace(config, backend="simulated")
    logger.info("Building runner", extra={"backend": config.backend, "adventurer_id": config.adventurer_id})
    if config.backend == "simulated":
        return _build_simulated_runner(config, stop_event, world)
    return _build_bridge_runner(config, stop_event)
