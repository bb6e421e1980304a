"""Shared fixtures: in-memory ledger/chain wiring for settlement and stages."""

from __future__ import annotations

import pytest

from cadenza.core.retry import RetryPolicy
from cadenza.notifications.conversation import ConversationStore
from cadenza.notifications.notifier import Notifier
from cadenza.payments.plan_account import PlanAccounts
from cadenza.payments.settlement import SettlementProtocol
from cadenza.payments.swapper import TokenSwapper
from tests.fakes import MemoryCacheBackend, MemoryChain, MemoryLedger
from tests.fakes.plans import (
    BURN_OPERATOR,
    CLOCK,
    EXT_PLAN,
    EXT_TOKEN,
    MINT_OPERATOR,
    OUR_OWNER,
    OUR_PLAN,
    OUR_TOKEN,
    ROUTER,
    RecordingSink,
    make_ddo,
)


@pytest.fixture
def ledger():
    ledger = MemoryLedger()
    ledger.descriptors[OUR_PLAN] = make_ddo(token=OUR_TOKEN, price="1", owner=OUR_OWNER)
    ledger.descriptors[EXT_PLAN] = make_ddo()
    return ledger


@pytest.fixture
def chain():
    chain = MemoryChain()
    chain.decimals[EXT_TOKEN.lower()] = 6
    chain.reserves[(OUR_TOKEN.lower(), EXT_TOKEN.lower())] = (10**12, 10**12)
    return chain


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cache():
    return MemoryCacheBackend()


@pytest.fixture
def notifier(sink, cache, ledger):
    return Notifier(sink, ConversationStore(cache), ledger=ledger)


@pytest.fixture
def retry():
    return RetryPolicy(2)


@pytest.fixture
def accounts(ledger):
    return PlanAccounts(ledger, MINT_OPERATOR, BURN_OPERATOR)


@pytest.fixture
def swapper(chain, retry):
    return TokenSwapper(chain, retry, ROUTER, slippage_bps=100, deadline_seconds=1200, clock=lambda: CLOCK)


@pytest.fixture
def settlement(ledger, chain, accounts, notifier, swapper, retry):
    return SettlementProtocol(ledger, chain, accounts, OUR_PLAN, notifier, swapper, retry)
