"""Hybrid AI assistant for the bookstore back office (RAG + Gemini function calling)."""
