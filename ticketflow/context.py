"""
Pipeline context: owns the Redis connections, the HTTP client and every
pipeline component. Built once at process start and passed to the worker pool
and the ingestion API.
"""

import logging
from typing import Optional

import httpx

from ticketflow.broker import ConnectionFactory, WorkQueue, redis_factory
from ticketflow.classifier import Classifier
from ticketflow.pipeline import AnalysisPipeline
from ticketflow.services.assignment import AssignmentEngine
from ticketflow.services.cache import StatsCache
from ticketflow.services.geo import Geocoder
from ticketflow.services.storage import Storage
from ticketflow.worker import WorkerPool

logger = logging.getLogger(__name__)


class PipelineContext:
    def __init__(
        self,
        connect: ConnectionFactory,
        http: Optional[httpx.AsyncClient] = None,
        routing_strategy: Optional[str] = None,
    ):
        self.connect = connect
        self.redis = connect()
        self.http = http or httpx.AsyncClient()
        self.queue = WorkQueue(connect)
        self.storage = Storage(self.redis)
        self.cache = StatsCache(self.redis)
        engine = (
            AssignmentEngine(self.storage, strategy=routing_strategy)
            if routing_strategy
            else AssignmentEngine(self.storage)
        )
        self.pipeline = AnalysisPipeline(
            storage=self.storage,
            classifier=Classifier(self.http),
            geocoder=Geocoder(self.http),
            engine=engine,
            cache=self.cache,
        )
        self.pool = WorkerPool(self.queue)

    @classmethod
    def from_config(cls) -> "PipelineContext":
        return cls(redis_factory())

    async def close(self) -> None:
        self.pool.stop()
        await self.queue.close()
        await self.http.aclose()
        await self.redis.aclose()
        logger.info("Pipeline context closed.")
