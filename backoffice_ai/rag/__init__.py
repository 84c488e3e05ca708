"""
RAG (Retrieval Augmented Generation) module for the back-office assistant.

This package keeps an embedding index of business entities (books,
orders, invoices) and retrieves the most relevant ones at query time so
the model answers from current business data.

Components:
    - document_store: ChromaDB collection of keyed documents with cosine top-K search
    - canonical_text: Deterministic text per entity, the input to embedding
    - indexer: Full and incremental rebuilds of the store via the Gemini gateway
    - retriever: Query embedding + top-K + bounded prompt context
"""
