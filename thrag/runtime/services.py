from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from thrag.clients.capability import CapabilityExecutor, HttpCapabilityExecutor, UnconfiguredExecutor
from thrag.clients.channel import EventChannel, LoggingChannel, NdjsonChannel
from thrag.clients.knowledge import HttpKnowledgeRetriever, KnowledgeRetriever, LocalKnowledgeBase
from thrag.clients.reputation import (
    HttpReputationService,
    ReputationService,
    StaticReputationService,
    StaticUserDirectory,
    UserDirectory,
)
from thrag.config import SETTINGS, THRESHOLDS, Settings, Thresholds
from thrag.db import SqlStore
from thrag.orchestration.scheduler import Orchestrator
from thrag.runtime.processor import SecurityEventProcessor
from thrag.runtime.state import DurableStore
from thrag.scoring.behavior import AnomalyScorer, HttpAnomalyScorer
from thrag.scoring.isoforest import IsolationForestScorer
from thrag.scoring.threat import ThreatScoringEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: DurableStore
    processor: SecurityEventProcessor
    orchestrator: Orchestrator


def _knowledge(settings: Settings) -> KnowledgeRetriever:
    if settings.knowledge_url:
        return HttpKnowledgeRetriever(settings.knowledge_url)
    if settings.knowledge_path:
        kb = LocalKnowledgeBase.from_ndjson(settings.knowledge_path)
        logger.info("loaded %d knowledge documents from %s", len(kb), settings.knowledge_path)
        return kb
    return LocalKnowledgeBase()


def _anomaly(settings: Settings) -> Optional[AnomalyScorer]:
    if settings.anomaly_url:
        return HttpAnomalyScorer(settings.anomaly_url)
    if settings.anomaly_model_path:
        return IsolationForestScorer.load(settings.anomaly_model_path)
    return None


def build_services(
    settings: Settings = SETTINGS,
    thresholds: Thresholds = THRESHOLDS,
    store: Optional[DurableStore] = None,
    executor: Optional[CapabilityExecutor] = None,
    knowledge: Optional[KnowledgeRetriever] = None,
    channel: Optional[EventChannel] = None,
) -> Services:
    """Wire collaborators from settings; explicit arguments take precedence."""
    store = store if store is not None else SqlStore(settings.database_url)
    knowledge = knowledge if knowledge is not None else _knowledge(settings)
    if channel is None:
        channel = NdjsonChannel(settings.channel_path) if settings.channel_path else LoggingChannel()
    if executor is None:
        executor = HttpCapabilityExecutor(settings.executor_url) if settings.executor_url else UnconfiguredExecutor()

    reputation: ReputationService
    users: UserDirectory
    if settings.reputation_url:
        http = HttpReputationService(settings.reputation_url)
        reputation, users = http, http
    else:
        reputation, users = StaticReputationService(), StaticUserDirectory()

    engine = ThreatScoringEngine(
        knowledge=knowledge,
        reputation=reputation,
        anomaly=_anomaly(settings),
        thresholds=thresholds,
    )
    processor = SecurityEventProcessor(
        store=store,
        engine=engine,
        reputation=reputation,
        users=users,
        channel=channel,
        settings=settings,
        thresholds=thresholds,
    )
    orchestrator = Orchestrator(
        executor=executor,
        knowledge=knowledge,
        processor=processor,
        store=store,
        settings=settings,
        thresholds=thresholds,
    )
    return Services(store=store, processor=processor, orchestrator=orchestrator)
