"""Retrieval pipeline components.

This package contains modules for:
- Document chunking at sentence boundaries
- Feature-hashing embedding generation
- Embedding index storage and snapshotting
- Ingestion and similarity search
"""
