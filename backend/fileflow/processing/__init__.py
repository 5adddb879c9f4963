"""
File Processing Capabilities
════════════════════════════

The three external capabilities the pipeline sequences:

  Content Extraction → Compression (LLM description) → Embedding

Modules
───────
  extractor.py    Extension-based classification, SHA-256 fingerprint, text extraction
  compression.py  Two-pass LangChain ChatOpenAI description with JSON output
  embeddings.py   OpenAI embeddings with retry and dimension check

Each raises its own *Failed exception; the orchestrator maps those onto the
pipeline error taxonomy.
"""

from fileflow.processing.compression import CompressionFailed, CompressionService
from fileflow.processing.embeddings import EmbeddingFailed, EmbeddingService
from fileflow.processing.extractor import ContentExtractor, ExtractionFailed, ExtractionResult

__all__ = [
    "ContentExtractor",
    "ExtractionFailed",
    "ExtractionResult",
    "CompressionService",
    "CompressionFailed",
    "EmbeddingService",
    "EmbeddingFailed",
]
