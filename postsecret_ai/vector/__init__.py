"""
Text embeddings, the Qdrant ANN mirror and similarity search.
"""

from .qdrant_index import QdrantIndex, SimilarHit, VectorIndex
from .searcher import SimilaritySearcher
from .text_embedding import EmbeddingClient

__all__ = ['EmbeddingClient', 'QdrantIndex', 'SimilarHit', 'SimilaritySearcher', 'VectorIndex']
