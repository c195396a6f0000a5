"""
Knowledge Architect.

Turns raw, unstructured text into a polished Obsidian note through a fixed
chain of LLM stages, with pluggable hosted and local model providers.
"""

__version__ = "1.0.0"
__author__ = "Knowledge Architect Team"

# Lazy imports to avoid circular dependencies
def get_pipeline():
    """Get the KnowledgePipeline class (lazy import)."""
    from knowledge_architect.pipeline.orchestrator import KnowledgePipeline
    return KnowledgePipeline

__all__ = ["get_pipeline", "__version__"]
