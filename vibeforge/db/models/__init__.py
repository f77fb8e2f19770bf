"""Re-export all models so Base.metadata sees them."""

from vibeforge.db.models.generation_job import GenerationJob

__all__ = ["GenerationJob"]
