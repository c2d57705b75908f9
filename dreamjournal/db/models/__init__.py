"""Re-export all models so Base.metadata sees them."""

from dreamjournal.db.models.dream_entry import DreamEntry
from dreamjournal.db.models.feature_marker import FeatureMarker
from dreamjournal.db.models.user import User

__all__ = [
    "DreamEntry",
    "FeatureMarker",
    "User",
]
