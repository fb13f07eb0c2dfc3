"""
Recall - Semantic Retrieval Engine for Conversational Bots

This package provides typed, scoped content stores (channel messages, user
memories, guild knowledge) with embedding-based similarity search, write-time
deduplication, bounded eviction, and context aggregation for prompt building.
"""

__version__ = "1.0.0"
