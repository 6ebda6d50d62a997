# Search layer: query embedding + vector retrieval over chunk collections.

from .embeddings import EmbeddingClient
from .retriever import DocumentRetriever, VectorCollection, VectorSearch
from .types import DocumentChunk, Persona

__all__ = ["EmbeddingClient", "DocumentRetriever", "VectorCollection", "VectorSearch", "DocumentChunk", "Persona"]
