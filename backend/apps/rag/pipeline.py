"""
RAG pipeline orchestrator.

Runs one query through RETRIEVE -> ASSEMBLE -> GENERATE -> SCORE and
shapes the result with source citations. Every call returns a
PipelineOutput: retrieval failures degrade to an empty context, and
generation failures become a zero-confidence error answer.
"""
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from django.conf import settings

from apps.indexing.chunker import Chunk, ChunkConfig, Document
from apps.indexing.embedder import BaseEmbeddingProvider, create_embedding_provider
from apps.indexing.retry import ProviderError, deadline_after, remaining_time
from apps.indexing.service import DocumentIndexer
from apps.rag.embeddings import CachedEmbeddingProvider, get_shared_cache, validate_query
from apps.rag.llm_client import BaseLLMClient, create_llm_client
from apps.rag.prompt import ConversationTurn, PromptAssembler, DEFAULT_MAX_PROMPT_TOKENS
from apps.rag.retrieval import RetrievalResult, Retriever
from apps.rag.scoring import ResponseScorer
from apps.rag.vector_index import InMemoryVectorIndex, PgVectorIndex, VectorIndex

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_ANSWER_TOKENS = 512

EXCERPT_MAX_CHARS = 400
EXCERPT_LEAD_IN = 100
EXCERPT_TRAIL_OUT = 50
CODE_BLOCK = re.compile(r'```[\s\S]*?```')


class PipelineStage(str, Enum):
    """
    Stages of a query.

    Order: START -> RETRIEVE -> ASSEMBLE -> GENERATE -> SCORE -> DONE
    """
    START = "START"
    RETRIEVE = "RETRIEVE"
    ASSEMBLE = "ASSEMBLE"
    GENERATE = "GENERATE"
    SCORE = "SCORE"
    DONE = "DONE"


@dataclass
class PipelineInput:
    query: str
    history: List[ConversationTurn] = field(default_factory=list)
    tenant_preamble: Optional[str] = None
    scope: Optional[str] = None  # tenant partition to retrieve from


@dataclass
class Source:
    """A retrieved chunk cited in the answer."""
    document_id: str
    chunk_id: str
    title: str
    excerpt: str
    relevance_score: float
    url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "docId": self.document_id,
            "chunkId": self.chunk_id,
            "title": self.title,
            "excerpt": self.excerpt,
            "url": self.url,
            "relevanceScore": self.relevance_score,
        }


@dataclass
class PipelineOutput:
    answer: str
    sources: List[Source]
    confidence: float
    error: Optional[str] = None
    stage: PipelineStage = PipelineStage.DONE
    timings_ms: Dict[str, float] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "confidence": self.confidence,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


def build_excerpt(text: str) -> str:
    """
    Short excerpt of a chunk for citation display.

    Prefers a window around the first fenced code block (100 chars before,
    50 after); otherwise the first 400 chars. Truncated sides get "...".
    """
    match = CODE_BLOCK.search(text)
    if match:
        start = max(0, match.start() - EXCERPT_LEAD_IN)
        end = min(len(text), match.end() + EXCERPT_TRAIL_OUT)
        prefix = "..." if start > 0 else ""
        suffix = "..." if end < len(text) else ""
        return f"{prefix}{text[start:end]}{suffix}"

    if len(text) > EXCERPT_MAX_CHARS:
        return text[:EXCERPT_MAX_CHARS] + "..."
    return text


def build_sources(retrieval: RetrievalResult) -> List[Source]:
    """One Source per retrieved chunk, in retrieval rank order."""
    return [
        Source(
            document_id=item.chunk.document_id,
            chunk_id=item.chunk.id,
            title=item.chunk.metadata.heading or f"Documentation Section {item.chunk.index + 1}",
            excerpt=build_excerpt(item.chunk.text),
            relevance_score=round(item.similarity, 2),
            url=item.chunk.metadata.url,
        )
        for item in retrieval.items
    ]


def error_output(error: Exception, stage: PipelineStage, timings_ms: Dict[str, float]) -> PipelineOutput:
    return PipelineOutput(
        answer=f"I encountered an error processing your query: {error}. Please try again.",
        sources=[],
        confidence=0.0,
        error=str(error),
        stage=stage,
        timings_ms=timings_ms,
    )


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


class RAGPipeline:
    """
    Query pipeline over explicitly injected components.

    Holds no per-query state; a single instance may serve concurrent
    queries as long as its collaborators are thread-safe.
    """

    def __init__(
        self,
        retriever: Retriever,
        assembler: PromptAssembler,
        llm: BaseLLMClient,
        scorer: ResponseScorer,
        indexer: Optional[DocumentIndexer] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_prompt_tokens: int = DEFAULT_MAX_PROMPT_TOKENS,
        max_answer_tokens: Optional[int] = DEFAULT_MAX_ANSWER_TOKENS,
    ):
        self.retriever = retriever
        self.assembler = assembler
        self.llm = llm
        self.scorer = scorer
        self.indexer = indexer
        self.temperature = temperature
        self.max_prompt_tokens = max_prompt_tokens
        self.max_answer_tokens = max_answer_tokens

    def process_query(
        self,
        pipeline_input: PipelineInput,
        timeout: Optional[float] = None,
    ) -> PipelineOutput:
        """
        Answer a question from the indexed corpus.

        Args:
            pipeline_input: Question, history, preamble and scope
            timeout: Deadline in seconds for the whole query, shared by
                retrieval and the completion call

        Returns:
            PipelineOutput; on generation failure the answer explains the
            error, sources are empty and confidence is 0

        Raises:
            QueryValidationError: If the question is empty or too long
        """
        query = validate_query(pipeline_input.query)
        start = time.monotonic()
        timings: Dict[str, float] = {}
        stage = PipelineStage.START

        logger.info(f"Processing RAG query ({len(query)} chars, scope={pipeline_input.scope})")
        deadline = deadline_after(timeout)

        try:
            stage = PipelineStage.RETRIEVE
            step = time.monotonic()
            retrieval = self.retriever.retrieve(
                query, scope=pipeline_input.scope, timeout=remaining_time(deadline),
            )
            timings["retrieval"] = _elapsed_ms(step)

            stage = PipelineStage.ASSEMBLE
            step = time.monotonic()
            prompt = self.assembler.build(
                query,
                retrieval.chunks,
                history=pipeline_input.history,
                tenant_preamble=pipeline_input.tenant_preamble,
                max_tokens=self.max_prompt_tokens,
            )
            timings["prompt"] = _elapsed_ms(step)
            logger.info(f"Prompt built: {len(prompt)} chars in {timings['prompt']}ms")

            stage = PipelineStage.GENERATE
            step = time.monotonic()
            answer = self.llm.complete(
                prompt,
                temperature=self.temperature,
                max_tokens=self.max_answer_tokens,
                timeout=remaining_time(deadline),
            )
            timings["generation"] = _elapsed_ms(step)

            stage = PipelineStage.SCORE
            confidence = self.scorer.score(answer)
            sources = build_sources(retrieval)
        except ProviderError as e:
            timings["total"] = _elapsed_ms(start)
            logger.error(f"RAG pipeline failed at {stage.value}: {e}")
            return error_output(e, stage, timings)
        except Exception as e:
            timings["total"] = _elapsed_ms(start)
            logger.exception(f"Unexpected error in RAG pipeline at {stage.value}")
            return error_output(e, stage, timings)

        timings["total"] = _elapsed_ms(start)
        logger.info(
            f"RAG pipeline complete: {len(sources)} sources, confidence={confidence}, "
            f"answer={len(answer)} chars, timings={timings}"
        )
        return PipelineOutput(
            answer=answer,
            sources=sources,
            confidence=confidence,
            timings_ms=timings,
        )

    def index_document(self, document: Document, chunk_config: Optional[ChunkConfig] = None) -> List[Chunk]:
        """
        Chunk, embed and store a document.

        Raises:
            ProviderError: If embedding fails
            RuntimeError: If the pipeline was built without an indexer
        """
        if self.indexer is None:
            raise RuntimeError("Pipeline has no indexer configured")
        return self.indexer.index_document(document, chunk_config)

    def warm_up(self) -> Dict[str, bool]:
        """Check the embedding and completion backends. Never raises."""
        logger.info("Warming up RAG pipeline...")
        health = {
            "embedding": self.retriever.embedder.check_connection(),
            "llm": self.llm.validate_connection(),
        }
        if not health["llm"]:
            logger.warning("LLM service connection failed. Check the provider token and model.")
        logger.info(f"RAG pipeline warmup complete: {health}")
        return health


def create_vector_index(backend: Optional[str] = None) -> VectorIndex:
    """Build the vector index named by VECTOR_INDEX_BACKEND."""
    backend = (backend or getattr(settings, 'VECTOR_INDEX_BACKEND', 'pgvector')).lower()
    if backend == 'memory':
        return InMemoryVectorIndex()
    return PgVectorIndex()


def build_pipeline(
    embedder: Optional[BaseEmbeddingProvider] = None,
    index: Optional[VectorIndex] = None,
    llm: Optional[BaseLLMClient] = None,
) -> RAGPipeline:
    """
    Wire a pipeline from Django settings.

    Any collaborator passed in is used as is; the rest come from settings.
    The query embedder is wrapped in the shared process-wide cache.
    """
    embedder = embedder or create_embedding_provider()
    index = index or create_vector_index()
    llm = llm or create_llm_client()

    cached_embedder = CachedEmbeddingProvider(embedder, get_shared_cache())

    return RAGPipeline(
        retriever=Retriever.from_settings(cached_embedder, index),
        assembler=PromptAssembler.from_settings(),
        llm=llm,
        scorer=ResponseScorer(),
        indexer=DocumentIndexer(
            embedder=embedder,
            index=index,
            default_config=ChunkConfig.from_settings(),
            max_workers=getattr(settings, 'EMBEDDING_MAX_WORKERS', 1),
        ),
        temperature=getattr(settings, 'RAG_TEMPERATURE', DEFAULT_TEMPERATURE),
        max_prompt_tokens=getattr(settings, 'RAG_MAX_PROMPT_TOKENS', DEFAULT_MAX_PROMPT_TOKENS),
        max_answer_tokens=getattr(settings, 'RAG_MAX_ANSWER_TOKENS', DEFAULT_MAX_ANSWER_TOKENS),
    )
