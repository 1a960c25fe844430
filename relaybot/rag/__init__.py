"""RAG module: semantic search with FAISS.

The retriever is imported lazily by the RAG agent so the embedding stack
only loads when retrieval is configured.
"""
