import os
from dotenv import load_dotenv
from pathlib import Path

# Load environment variables from .env file with explicit path
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env')

# Gemini Configuration
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_EMBEDDING_MODEL = os.getenv("GEMINI_EMBEDDING_MODEL", "text-embedding-004")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/")
GEMINI_UPLOAD_BASE_URL = os.getenv("GEMINI_UPLOAD_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/")

# Leave unset to latch the dimensionality of the first successful embedding
_embedding_dims = os.getenv("GEMINI_EMBEDDING_DIMENSIONS")
GEMINI_EMBEDDING_DIMENSIONS = int(_embedding_dims) if _embedding_dims else None

# At most this many outbound calls to Gemini in flight, process-wide
GEMINI_MAX_CONCURRENCY = int(os.getenv("GEMINI_MAX_CONCURRENCY", "3"))
GEMINI_TIMEOUT_SECONDS = float(os.getenv("GEMINI_TIMEOUT_SECONDS", "60"))

# Embedding store (ChromaDB)
CHROMA_PERSIST_DIR = os.getenv("CHROMA_PERSIST_DIR", "backoffice_ai/rag/chroma_db")
AI_COLLECTION_NAME = os.getenv("AI_COLLECTION_NAME", "ai_documents")

# Retrieval
RAG_TOP_K = int(os.getenv("RAG_TOP_K", "5"))
RAG_MAX_TOP_K = int(os.getenv("RAG_MAX_TOP_K", "15"))
RAG_MIN_SIMILARITY = float(os.getenv("RAG_MIN_SIMILARITY", "0.1"))
RAG_MAX_CONTEXT_CHARS = int(os.getenv("RAG_MAX_CONTEXT_CHARS", "12000"))
RAG_MAX_DOCUMENT_CHARS = int(os.getenv("RAG_MAX_DOCUMENT_CHARS", "3000"))
HISTORY_MAX_TURNS = int(os.getenv("HISTORY_MAX_TURNS", "12"))

# Book recommendations
RECOMMEND_DEFAULT_MAX_RESULTS = int(os.getenv("RECOMMEND_DEFAULT_MAX_RESULTS", "12"))

# Indexer
INDEX_CONCURRENCY = int(os.getenv("INDEX_CONCURRENCY", "3"))
INDEX_MAX_BOOKS = int(os.getenv("INDEX_MAX_BOOKS", "800"))
INDEX_MAX_ORDERS = int(os.getenv("INDEX_MAX_ORDERS", "400"))

# Database Configuration (back-office business data, read only)
DB_HOST = os.getenv("DB_HOST")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")

# Optional passkey for the /ai endpoints; disabled when unset
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

# Advertise the function registry to the model; when false ask_hybrid answers from the index only
HYBRID_TOOLS_ENABLED = os.getenv("HYBRID_TOOLS_ENABLED", "true").lower() in ("1", "true", "yes")
