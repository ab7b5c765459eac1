"""
Provider adapters used by the agent pipeline.

- base: provider protocols, SearchHit and the single-use CompletionStream
- completion: OpenAI-compatible chat completion client
- search: SerpAPI web search client
- retry: bounded retries and per-call timeouts around any provider
"""

from .base import CompletionProvider, CompletionStream, SearchHit, SearchProvider
from .completion import OpenAICompletionClient
from .retry import ResilientCompletionClient, ResilientSearchClient, RetryPolicy
from .search import SerpApiSearchClient

__all__ = [
    "CompletionProvider",
    "CompletionStream",
    "OpenAICompletionClient",
    "ResilientCompletionClient",
    "ResilientSearchClient",
    "RetryPolicy",
    "SearchHit",
    "SearchProvider",
    "SerpApiSearchClient",
]
