"""DreamEntry model: one recorded dream, its interpretation and its LLM cost."""

import json
import re
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from dreamjournal.db.base import Base

_SYMBOL_SPLIT = re.compile(r"[,;]")


class DreamEntry(Base):
    __tablename__ = "dream_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user = relationship("User", back_populates="dreams")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    slept_at = Column(DateTime(timezone=True), nullable=True)
    text = Column(Text, nullable=False)
    symbols_raw = Column(String(500), nullable=True)  # user-declared, comma separated

    llm_json_text = Column(Text, nullable=True)  # serialized Interpretation
    keywords = Column(Text, nullable=True)  # comma-joined tag set, e.g. "awaiting_profile"

    tokens_in = Column(Integer, nullable=True)
    tokens_out = Column(Integer, nullable=True)
    cost_rub = Column(Float, nullable=True)

    @property
    def interpretation(self) -> dict:
        """Stored interpretation as a dict ({} when absent or unreadable).

        This is the only place that knows how the interpretation is stored.
        """
        raw = self.llm_json_text
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}

    @property
    def is_interpreted(self) -> bool:
        data = self.interpretation
        return bool(data.get("short_title") or data.get("esoteric_interpretation") or data.get("barnum_insight"))

    @property
    def user_symbols(self) -> list[str]:
        if not self.symbols_raw:
            return []
        return [s.strip() for s in _SYMBOL_SPLIT.split(self.symbols_raw) if s.strip()]
