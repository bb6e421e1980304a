"""Object graph for one orchestrator process."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from cadenza.chain.memory import MemoryChain
from cadenza.chain.web3_client import Web3ChainClient
from cadenza.core.config import AppSettings
from cadenza.core.exceptions import ConfigurationError
from cadenza.core.protocols import ICacheBackend, IChain, IFileStore, ILedger, IMediaCompiler, INarrator
from cadenza.core.retry import RetryPolicy
from cadenza.ledger.memory import MemoryLedger
from cadenza.media.ffmpeg import FfmpegCompiler
from cadenza.notifications.conversation import ConversationStore
from cadenza.notifications.narrator import OpenAINarrator, PassthroughNarrator
from cadenza.notifications.notifier import Notifier
from cadenza.notifications.sse import SseBroker
from cadenza.payments.plan_account import PlanAccounts
from cadenza.payments.settlement import SettlementProtocol
from cadenza.payments.swapper import TokenSwapper
from cadenza.persistence import create_persistence
from cadenza.pipeline.engine import PipelineEngine
from cadenza.pipeline.stages import StageHandlers
from cadenza.tasks.fanout import FanOutExecutor
from cadenza.tasks.invoker import TaskInvoker
from cadenza.tasks.validation import TaskOutputReader

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: AppSettings
    ledger: ILedger
    chain: IChain
    cache: ICacheBackend
    broker: SseBroker
    notifier: Notifier
    settlement: SettlementProtocol
    engine: PipelineEngine


def build_runtime(
    settings: Optional[AppSettings] = None,
    ledger: Optional[ILedger] = None,
    chain: Optional[IChain] = None,
    cache: Optional[ICacheBackend] = None,
    file_store: Optional[IFileStore] = None,
    narrator: Optional[INarrator] = None,
    compiler: Optional[IMediaCompiler] = None,
) -> Runtime:
    """Wire every collaborator; injected ones take precedence over settings.

    Only the dev environment may run on the in-memory ledger and chain;
    elsewhere a missing ledger adapter or chain key raises ``ConfigurationError``.
    """
    if settings is None:
        settings = AppSettings()

    dev = settings.environment == "dev"
    if ledger is None:
        if not dev:
            raise ConfigurationError(f"No ledger adapter configured for environment {settings.environment!r}")
        logger.warning("No ledger adapter injected, using the in-memory ledger")
        ledger = MemoryLedger()
    if chain is None:
        if settings.chain.private_key:
            chain = Web3ChainClient(settings.chain)
        elif not dev:
            raise ConfigurationError(
                f"CADENZA_CHAIN_PRIVATE_KEY is required for environment {settings.environment!r}"
            )
        else:
            logger.warning("CADENZA_CHAIN_PRIVATE_KEY not set, using the in-memory chain")
            chain = MemoryChain()
    if cache is None or file_store is None:
        default_cache, default_store = create_persistence(settings)
        cache = cache or default_cache
        file_store = file_store or default_store
    if narrator is None:
        narrator = OpenAINarrator(settings.narration) if settings.narration.enabled else PassthroughNarrator()

    retry = RetryPolicy(settings.pipeline.max_retries)
    broker = SseBroker()
    notifier = Notifier(
        broker,
        ConversationStore(cache, ttl=settings.redis.history_ttl),
        narrator,
        ledger,
    )
    accounts = PlanAccounts(ledger, settings.chain.mint_operator, settings.chain.burn_operator)
    swapper = TokenSwapper(
        chain,
        retry,
        settings.chain.router_address,
        settings.chain.slippage_bps,
        settings.chain.swap_deadline_seconds,
    )
    settlement = SettlementProtocol(
        ledger, chain, accounts, settings.ledger.plan_id, notifier, swapper, retry
    )
    handlers = StageHandlers(
        ledger=ledger,
        notifier=notifier,
        settlement=settlement,
        invoker=TaskInvoker(ledger),
        fanout=FanOutExecutor(retry, settings.pipeline.fanout_concurrency),
        reader=TaskOutputReader(ledger),
        compiler=compiler or FfmpegCompiler(),
        file_store=file_store,
        agents=settings.agents,
        config=settings.pipeline,
        retry=retry,
    )
    return Runtime(
        settings=settings,
        ledger=ledger,
        chain=chain,
        cache=cache,
        broker=broker,
        notifier=notifier,
        settlement=settlement,
        engine=PipelineEngine(ledger, handlers, notifier),
    )
