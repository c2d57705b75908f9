"""FeatureMarker model: last period a gated feature was issued to a user."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from dreamjournal.db.base import Base


class FeatureMarker(Base):
    __tablename__ = "feature_markers"
    __table_args__ = (UniqueConstraint("user_id", "feature", name="uq_feature_marker_user_feature"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    feature = Column(String(50), nullable=False)  # practice | weekly_report
    period_key = Column(String(10), nullable=False)  # YYYY-MM-DD or YYYY-MM in user timezone
    issued_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
