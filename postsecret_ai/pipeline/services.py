"""
Wiring of the pipeline components from one PipelineConfig.

Used by both the CLI and the API server so they build identical stacks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ..db.sqlite_client import SQLiteStore
from ..utils.config import PipelineConfig
from ..vector.qdrant_index import QdrantIndex
from ..vector.searcher import SimilaritySearcher
from ..vector.text_embedding import EmbeddingClient
from ..vision.classifier import VisionClassifier
from .bulk_jobs import BulkJobService
from .classification_service import ClassificationOrchestrator
from .ingest import SecretIngestService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: PipelineConfig
    store: SQLiteStore
    classifier: VisionClassifier
    embedder: EmbeddingClient
    index: QdrantIndex
    orchestrator: ClassificationOrchestrator
    searcher: SimilaritySearcher
    bulk: BulkJobService
    ingest: SecretIngestService

    def close(self):
        self.store.close()


def build_services(
    config: PipelineConfig,
    store: Optional[SQLiteStore] = None,
    session: Optional[requests.Session] = None,
) -> Services:
    store = store or SQLiteStore(config.storage.db_path)
    session = session or requests.Session()

    classifier = VisionClassifier(config.openai, config.http, config.moderation, session)
    embedder = EmbeddingClient(config.openai, config.embedding, session)
    index = QdrantIndex(config.qdrant, session)
    orchestrator = ClassificationOrchestrator(store, store, classifier, embedder, index)
    searcher = SimilaritySearcher(store, index, store, embedder)
    bulk = BulkJobService(store, store, store, orchestrator, config.bulk)
    ingest = SecretIngestService(store, orchestrator, config.bulk)

    logger.info("Pipeline services ready")
    return Services(config, store, classifier, embedder, index, orchestrator, searcher, bulk, ingest)
