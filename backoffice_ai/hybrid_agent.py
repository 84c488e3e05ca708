"""
Hybrid agent - per-query controller combining RAG and function calling.

State machine for one query:

    START -> MODEL_CALLED -> DIRECT_ANSWER -> DONE
                          -> TOOL_REQUESTED -> TOOL_EXECUTED -> FOLLOW_UP_CALLED -> DONE
    any state -> FAILED

With tools registered the model is called with the function declarations;
otherwise the query is embedded, the top-K documents are folded into the
prompt and the model answers from that context; a query that cannot be
embedded fails before any model call. At most two model round
trips happen per query. A function call in the follow-up response is
never executed.

The agent does not retry. A None from the gateway at any step ends the
query as FAILED with no partial answer.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import config
from .function_registry import FunctionRegistry
from .gemini_gateway import GeminiGateway
from .models.conversation import ConversationTurn, Role
from .rag.document_store import ScoredDocument
from .rag.indexer import Indexer, ReindexSummary
from .rag.retriever import Retriever
from .response_guard import clean_answer

logger = logging.getLogger(__name__)

TOOLS_SYSTEM_PROMPT = (
    "You are the back-office assistant of an online bookstore. "
    "Answer staff questions about books, stock, orders and invoices. "
    "When the question needs live data about a specific order, invoice, customer or book, "
    "call one of the available functions instead of guessing. "
    "Answer in the language of the question, briefly and precisely."
)

RAG_SYSTEM_PROMPT = (
    "You are the back-office assistant of an online bookstore. "
    "Answer the question using only the documents in `context`. "
    "If the context does not contain the answer, say that the data is not available. "
    "Answer in the language of the question, briefly and precisely."
)


class AgentState(Enum):
    START = "start"
    MODEL_CALLED = "model_called"
    DIRECT_ANSWER = "direct_answer"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTED = "tool_executed"
    FOLLOW_UP_CALLED = "follow_up_called"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    AgentState.START: {AgentState.MODEL_CALLED, AgentState.FAILED},
    AgentState.MODEL_CALLED: {AgentState.DIRECT_ANSWER, AgentState.TOOL_REQUESTED, AgentState.FAILED},
    AgentState.DIRECT_ANSWER: {AgentState.DONE, AgentState.FAILED},
    AgentState.TOOL_REQUESTED: {AgentState.TOOL_EXECUTED, AgentState.FAILED},
    AgentState.TOOL_EXECUTED: {AgentState.FOLLOW_UP_CALLED, AgentState.FAILED},
    AgentState.FOLLOW_UP_CALLED: {AgentState.DONE, AgentState.FAILED},
    AgentState.DONE: set(),
    AgentState.FAILED: set(),
}


@dataclass
class HybridAnswer:
    answer_text: Optional[str]
    used_sources: List[str] = field(default_factory=list)
    failed: bool = False
    state: AgentState = AgentState.DONE
    error: Optional[str] = None
    trace: List[AgentState] = field(default_factory=list)
    documents: List[ScoredDocument] = field(default_factory=list)

    def to_dict(self, include_documents: bool = False) -> Dict[str, Any]:
        data = {
            "answerText": self.answer_text,
            "usedSources": list(self.used_sources),
            "failed": self.failed,
        }
        if self.error:
            data["error"] = self.error
        if include_documents:
            data["documents"] = [
                {
                    "refType": d.document.ref_type,
                    "refId": d.document.ref_id,
                    "score": round(d.score, 4),
                    "content": d.document.content,
                    "updatedAt": d.document.updated_at.isoformat(),
                }
                for d in self.documents
            ]
        return data


class _QueryRun:
    """Tracks the state of one query and enforces legal transitions."""

    def __init__(self, query: str):
        self.query = query
        self.state = AgentState.START
        self.trace = [AgentState.START]

    def advance(self, new_state: AgentState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal agent transition {self.state.name} -> {new_state.name}")
        logger.info(f"[HYBRID] {self.state.name} -> {new_state.name}")
        self.state = new_state
        self.trace.append(new_state)

    def fail(self, reason: str) -> HybridAnswer:
        self.advance(AgentState.FAILED)
        logger.warning(f"[HYBRID] Query failed: {reason} (query: {self.query[:80]})")
        return HybridAnswer(
            answer_text=None, used_sources=[], failed=True,
            state=self.state, error=reason, trace=list(self.trace),
        )

    def done(self, answer_text: str, used_sources: Sequence[str], documents=None) -> HybridAnswer:
        self.advance(AgentState.DONE)
        return HybridAnswer(
            answer_text=answer_text, used_sources=list(dict.fromkeys(used_sources)), failed=False,
            state=self.state, trace=list(self.trace), documents=list(documents or []),
        )


HistoryInput = Iterable[Union[ConversationTurn, Dict[str, Any]]]


def normalize_history(history: Optional[HistoryInput], max_turns: int) -> Tuple[ConversationTurn, ...]:
    """Convert caller history to an immutable tuple of the last `max_turns` turns.

    Accepts ConversationTurn objects or {"role", "content"} dicts; turns
    with an unknown role or no content are dropped.
    """
    turns: List[ConversationTurn] = []
    for item in history or ():
        if isinstance(item, ConversationTurn):
            turns.append(item)
            continue
        if not isinstance(item, dict):
            logger.warning(f"[HYBRID] Ignoring history entry of type {type(item).__name__}")
            continue
        content = item.get("content")
        if content is None or (isinstance(content, str) and not content.strip()):
            continue
        try:
            role = Role.parse(str(item.get("role") or "user"))
        except ValueError:
            logger.warning(f"[HYBRID] Ignoring history entry with role {item.get('role')!r}")
            continue
        turns.append(ConversationTurn(role, content))
    if max_turns <= 0:
        return ()
    return tuple(turns[-max_turns:])


def build_user_payload(query: str, history: Sequence[ConversationTurn], context: Optional[str] = None) -> str:
    """JSON user payload: the question, recent history and (RAG only) the retrieved context."""
    payload: Dict[str, Any] = {"question": query}
    if history:
        payload["history"] = [
            {
                "role": turn.role.value,
                "content": turn.content if isinstance(turn.content, str) else json.dumps(turn.content, ensure_ascii=False),
            }
            for turn in history
        ]
    if context is not None:
        payload["context"] = context
    return json.dumps(payload, ensure_ascii=False)


class HybridAgent:
    """Answers back-office questions through RAG or one function-call round trip.

    Args:
        gateway: Model gateway (shared, gated).
        retriever: RAG retrieval over the document store.
        registry: Function registry; when None or empty, ask_hybrid uses RAG.
        indexer: Needed only for reindex().
        history_max_turns: How many trailing history turns are sent to the model.
    """

    def __init__(
        self,
        gateway: GeminiGateway,
        retriever: Retriever,
        registry: Optional[FunctionRegistry] = None,
        indexer: Optional[Indexer] = None,
        history_max_turns: Optional[int] = None,
    ):
        self.gateway = gateway
        self.retriever = retriever
        self.registry = registry
        self.indexer = indexer
        self.history_max_turns = (
            config.HISTORY_MAX_TURNS if history_max_turns is None else history_max_turns
        )

    @property
    def tools_enabled(self) -> bool:
        return self.registry is not None and self.registry.has_tools()

    async def ask_hybrid(
        self,
        query: str,
        history: Optional[HistoryInput] = None,
        timeout: Optional[float] = None,
    ) -> HybridAnswer:
        run = _QueryRun(query or "")
        if not query or not query.strip():
            return run.fail("empty query")
        query = query.strip()
        turns = normalize_history(history, self.history_max_turns)

        if self.tools_enabled:
            return await self._ask_with_tools(run, query, turns, timeout)
        return await self._ask_with_rag(run, query, turns, timeout)

    async def _ask_with_tools(
        self, run: _QueryRun, query: str, turns: Tuple[ConversationTurn, ...], timeout: Optional[float]
    ) -> HybridAnswer:
        user_payload = build_user_payload(query, turns)

        run.advance(AgentState.MODEL_CALLED)
        raw = await self.gateway.complete_with_tools(
            TOOLS_SYSTEM_PROMPT, user_payload, self.registry.tool_spec(), timeout=timeout
        )
        if raw is None:
            return run.fail("model call failed")

        call = self.gateway.extract_function_call(raw)
        if call is None:
            text = clean_answer(self.gateway.extract_first_answer_text(raw))
            if not text:
                return run.fail("model returned neither text nor a function call")
            run.advance(AgentState.DIRECT_ANSWER)
            return run.done(text, [])

        run.advance(AgentState.TOOL_REQUESTED)
        logger.info(f"[HYBRID] Model requested {call.name} with args {call.args}")
        result = await self.registry.dispatch(call)
        run.advance(AgentState.TOOL_EXECUTED)

        run.advance(AgentState.FOLLOW_UP_CALLED)
        answer = await self.gateway.continue_with_function_result(
            TOOLS_SYSTEM_PROMPT, user_payload, call.name, call.args, result.payload, timeout=timeout
        )
        if answer is None:
            return run.fail("follow-up model call failed")

        text = clean_answer(answer)
        if not text:
            return run.fail("follow-up returned no answer text")
        return run.done(text, result.sources)

    async def _ask_with_rag(
        self,
        run: _QueryRun,
        query: str,
        turns: Tuple[ConversationTurn, ...],
        timeout: Optional[float],
        top_k: Optional[int] = None,
        ref_types: Optional[Iterable[str]] = None,
        require_documents: bool = False,
    ) -> HybridAnswer:
        retrieval = await self.retriever.retrieve(query, top_k=top_k, ref_types=ref_types)
        if not retrieval.embedded:
            return run.fail("query embedding failed")
        if require_documents and not retrieval.documents:
            return run.fail("no matching documents")
        user_payload = build_user_payload(query, turns, context=retrieval.context)

        run.advance(AgentState.MODEL_CALLED)
        answer = await self.gateway.complete_text(RAG_SYSTEM_PROMPT, user_payload, timeout=timeout)
        if answer is None:
            return run.fail("model call failed")

        text = clean_answer(answer)
        if not text:
            return run.fail("model returned no answer text")
        run.advance(AgentState.DIRECT_ANSWER)
        return run.done(text, retrieval.used_sources, documents=retrieval.documents)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        ref_types: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> HybridAnswer:
        """Pure RAG answer regardless of registered tools; the result carries the scored documents.

        Fails without calling the model when the index holds nothing for the
        requested types or when no document clears the similarity floor.
        """
        run = _QueryRun(query or "")
        if not query or not query.strip():
            return run.fail("empty query")
        types = list(ref_types) if ref_types is not None else None
        if await asyncio.to_thread(self.retriever.store.count, types) == 0:
            return run.fail("AI index empty")
        return await self._ask_with_rag(
            run, query.strip(), (), timeout, top_k=top_k, ref_types=types, require_documents=True
        )

    async def reindex(self, ref_types: Optional[Iterable[str]] = None, truncate: bool = False) -> ReindexSummary:
        if self.indexer is None:
            raise RuntimeError("HybridAgent was created without an Indexer")
        return await self.indexer.reindex_all(ref_types=ref_types, truncate=truncate)
