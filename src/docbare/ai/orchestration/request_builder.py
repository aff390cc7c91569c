"""Assembly of the upstream chat payload for one query."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from .. import prompts
from ..ai_types import KnowledgeRetriever, MemoryProvider, QueryRequest
from ..client import AIClient
from ..services.context_optimizer import ContextBundle, ContextCeilings, OptimizedContext, optimize
from ..services.token_budget import calculate_max_tokens

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PreparedRequest:
    """Payload ready for :meth:`StreamTranscoder.transcode` plus its inputs."""

    payload: Dict[str, Any]
    max_tokens: int
    optimized: OptimizedContext

    @property
    def was_truncated(self) -> bool:
        return self.optimized.was_truncated


class RequestBuilder:
    """Sizes the output budget, gathers context and builds the chat messages.

    Memory and knowledge collaborators are optional. A collaborator that
    fails is logged and treated as having returned nothing; the request
    still goes out.
    """

    def __init__(
        self,
        client: AIClient,
        *,
        ceilings: ContextCeilings | None = None,
        memory_provider: MemoryProvider | None = None,
        retriever: KnowledgeRetriever | None = None,
        knowledge_limit: int = prompts.KNOWLEDGE_CHUNK_LIMIT,
    ) -> None:
        self._client = client
        self._ceilings = ceilings or ContextCeilings()
        self._memory_provider = memory_provider
        self._retriever = retriever
        self._knowledge_limit = max(0, int(knowledge_limit))

    @property
    def ceilings(self) -> ContextCeilings:
        return self._ceilings

    async def build(self, request: QueryRequest) -> PreparedRequest:
        max_tokens = calculate_max_tokens(request.query, request.has_document)
        memory = await self._memory_context(request)
        knowledge = await self._knowledge_context(request)
        bundle = ContextBundle(
            system_prompt=prompts.system_prompt_for(request.mode),
            memory_context=memory,
            document_context=request.document_content or "",
            knowledge_base_context=knowledge,
            query=request.query,
        )
        optimized = optimize(bundle, self._ceilings)
        if optimized.was_truncated:
            LOGGER.info(
                "Context truncated from %s to %s tokens for session %s",
                optimized.original_tokens,
                optimized.total_tokens,
                request.session_id,
            )
        messages = build_messages(optimized.bundle, document_name=request.document_name)
        payload = self._client.build_chat_payload(
            messages,
            max_tokens=max_tokens,
            metadata=_string_metadata(request.metadata),
        )
        LOGGER.debug(
            "Prepared upstream request: mode=%s max_tokens=%s context_tokens=%s",
            request.mode.value,
            max_tokens,
            optimized.total_tokens,
        )
        return PreparedRequest(payload=payload, max_tokens=max_tokens, optimized=optimized)

    async def _memory_context(self, request: QueryRequest) -> str:
        if request.memory_context:
            return request.memory_context
        if self._memory_provider is None:
            return ""
        try:
            memory = await self._memory_provider.memory_context(
                request.session_id, request.user_id, request.query
            )
        except Exception:
            LOGGER.warning("Memory provider failed for session %s", request.session_id, exc_info=True)
            return ""
        return memory or ""

    async def _knowledge_context(self, request: QueryRequest) -> str:
        chunks: tuple[str, ...] = tuple(request.knowledge_chunks)
        if not chunks and self._retriever is not None and self._knowledge_limit:
            try:
                chunks = tuple(await self._retriever.retrieve(request.query, self._knowledge_limit))
            except Exception:
                LOGGER.warning("Knowledge retrieval failed for query", exc_info=True)
                chunks = ()
        if self._knowledge_limit:
            chunks = chunks[: self._knowledge_limit]
        return prompts.format_knowledge_chunks(chunks)


def build_messages(bundle: ContextBundle, *, document_name: str | None = None) -> List[Dict[str, str]]:
    """Render an (optimized) bundle as system and user chat messages."""

    system_parts = [bundle.system_prompt.strip()]
    if bundle.memory_context.strip():
        system_parts.append(prompts.memory_section(bundle.memory_context))
    if bundle.knowledge_base_context.strip():
        system_parts.append(prompts.knowledge_section(bundle.knowledge_base_context))
    if bundle.document_context.strip():
        user_content = prompts.document_prompt(bundle.query, bundle.document_context, document_name)
    else:
        user_content = bundle.query
    return [
        {"role": "system", "content": "\n\n".join(part for part in system_parts if part)},
        {"role": "user", "content": user_content},
    ]


def _string_metadata(metadata: Mapping[str, Any] | None) -> Dict[str, str] | None:
    if not metadata:
        return None
    return {str(key): str(value) for key, value in metadata.items() if value is not None}


__all__ = ["PreparedRequest", "RequestBuilder", "build_messages"]
