# Entry point for the FastAPI app
from fastapi import FastAPI, Request, HTTPException
import logging
from typing import Any, Dict, Optional

from . import config, security
from .business_data import MySQLBusinessReader
from .concurrency_gate import get_gate
from .function_registry import FunctionRegistry
from .gemini_gateway import GeminiGateway
from .hybrid_agent import HybridAgent
from .rag.document_store import DocumentStore
from .recommender import BookRecommender
from .rag.indexer import Indexer
from .rag.retriever import Retriever

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI()

default_message = "Back-office AI assistant is running."

MAX_UPLOAD_BYTES = 20 * 1024 * 1024

# Built once at startup and shared by every request
components: Dict[str, Any] = {}


def build_components() -> Dict[str, Any]:
    gateway = GeminiGateway(gate=get_gate())
    store = DocumentStore()
    reader = MySQLBusinessReader()
    registry = FunctionRegistry(reader) if config.HYBRID_TOOLS_ENABLED else None
    indexer = Indexer(gateway, store, reader)
    agent = HybridAgent(gateway, Retriever(gateway, store), registry=registry, indexer=indexer)
    recommender = BookRecommender(gateway, reader)
    return {"gateway": gateway, "store": store, "agent": agent, "recommender": recommender}


@app.on_event("startup")
def startup_event():
    if not components:
        components.update(build_components())
    if not config.GEMINI_API_KEY:
        logger.warning("[STARTUP] GEMINI_API_KEY is not set; AI endpoints will report failures")
    info = components["store"].info()
    logger.info(f"[STARTUP] Document store {info['path']} holds {info['count']} documents {info['by_ref_type']}")


@app.on_event("shutdown")
async def shutdown_event():
    gateway = components.get("gateway")
    if gateway is not None:
        await gateway.aclose()


def _agent() -> HybridAgent:
    agent = components.get("agent")
    if agent is None:
        raise HTTPException(status_code=503, detail="Assistant is not initialized")
    return agent


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer")


def _ref_types(data: Dict[str, Any]):
    value = data.get("refTypes")
    if value is None:
        return None
    if isinstance(value, str):
        value = [v for v in value.split(",")]
    if not isinstance(value, list):
        raise HTTPException(status_code=400, detail="refTypes must be a list of strings")
    return [str(v) for v in value]


@app.get("/")
def root():
    return default_message


@app.post("/ai/ask")
async def ai_ask(request: Request):
    """Hybrid question answering: {query, history?} -> {answerText, usedSources, failed}."""
    security.validate_api_key(request)
    data = await _json_body(request)

    query = data.get("query")
    if not isinstance(query, str) or not query.strip():
        raise HTTPException(status_code=400, detail="query is required")
    history = data.get("history") or []
    if not isinstance(history, list):
        raise HTTPException(status_code=400, detail="history must be a list of {role, content}")

    logger.info(f"[API] /ai/ask query={query[:80]!r} history_turns={len(history)}")
    result = await _agent().ask_hybrid(query, history)
    return result.to_dict()


@app.post("/ai/search")
async def ai_search(request: Request):
    """Pure RAG search over the document index."""
    security.validate_api_key(request)
    data = await _json_body(request)

    query = data.get("query")
    if not isinstance(query, str) or not query.strip():
        raise HTTPException(status_code=400, detail="query is required")

    ref_types = _ref_types(data)
    if ref_types is not None:
        ref_types = [r.strip().lower() for r in ref_types if r.strip()] or None
    result = await _agent().search(query, top_k=_optional_int(data, "topK"), ref_types=ref_types)
    return result.to_dict(include_documents=bool(data.get("includeDocuments")))


@app.post("/ai/reindex")
async def ai_reindex(request: Request):
    """Rebuild the document index: {refTypes?, truncate?} -> summary."""
    security.validate_api_key(request)
    data = await _json_body(request) if await request.body() else {}

    try:
        summary = await _agent().reindex(ref_types=_ref_types(data), truncate=bool(data.get("truncate")))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return summary.to_dict()


@app.post("/ai/files")
async def ai_upload_file(request: Request):
    """Raw upload of a file to Gemini; the body is the file, Content-Type its MIME type."""
    security.validate_api_key(request)
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(body) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    mime_type = request.headers.get("Content-Type") or "application/octet-stream"
    gateway: GeminiGateway = components.get("gateway")
    if gateway is None:
        raise HTTPException(status_code=503, detail="Assistant is not initialized")

    store_name = request.query_params.get("store")
    if store_name:
        name = await gateway.upload_file_to_store(body, store_name, mime_type)
    else:
        name = await gateway.upload_file(body, mime_type)
    if not name:
        raise HTTPException(status_code=502, detail="Upload to Gemini failed")
    return {"name": name}


@app.post("/ai/stores")
async def ai_create_store(request: Request):
    """Create a Gemini file search store: {displayName} -> {name}."""
    security.validate_api_key(request)
    data = await _json_body(request)
    display_name = data.get("displayName")
    if not isinstance(display_name, str) or not display_name.strip():
        raise HTTPException(status_code=400, detail="displayName is required")

    gateway: GeminiGateway = components.get("gateway")
    if gateway is None:
        raise HTTPException(status_code=503, detail="Assistant is not initialized")
    name = await gateway.create_file_search_store(display_name.strip())
    if not name:
        raise HTTPException(status_code=502, detail="Could not create file search store")
    return {"name": name}


@app.post("/ai/recommend-books")
async def ai_recommend_books(request: Request):
    """Book recommendations: {prompt, maxResults?} -> {books, summary, fallback}."""
    security.validate_api_key(request)
    data = await _json_body(request)

    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise HTTPException(status_code=400, detail="prompt is required")

    recommender: BookRecommender = components.get("recommender")
    if recommender is None:
        raise HTTPException(status_code=503, detail="Assistant is not initialized")
    logger.info(f"[API] /ai/recommend-books prompt={prompt[:80]!r}")
    result = await recommender.recommend(prompt, max_results=_optional_int(data, "maxResults"))
    return result.to_dict()
