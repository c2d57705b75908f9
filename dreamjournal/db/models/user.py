"""User model: plan, monthly counters, profile and report/reminder bookkeeping."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from dreamjournal.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)  # Telegram user id

    # Plan (normalized on read; stored value may be a legacy alias like "pro")
    plan = Column(String(32), nullable=False, default="free")
    plan_until = Column(DateTime(timezone=True), nullable=True)

    # Monthly counters, zeroed lazily on the first access in a new UTC month
    monthly_count = Column(Integer, nullable=False, default=0)
    monthly_followups = Column(Integer, nullable=False, default=0)
    last_plan_reset = Column(DateTime(timezone=True), nullable=True)

    # Profile
    timezone = Column(String(64), nullable=True)
    age_band = Column(String(16), nullable=True)  # 18-24 | 25-34 | 35-44 | 45-54 | 55+
    chronotype = Column(String(16), nullable=True)  # lark | owl | mixed
    esoterica_level = Column(Integer, nullable=True)  # 0..100
    sleep_goal = Column(String(32), nullable=True)  # fall_asleep | remember | symbols | less_anxiety
    wake_time = Column(String(5), nullable=True)  # HH:MM
    sleep_time = Column(String(5), nullable=True)  # HH:MM
    stress_level = Column(Integer, nullable=True)  # 0..10
    dream_frequency = Column(String(16), nullable=True)  # rarely | sometimes | often
    first_interpret_done = Column(Boolean, nullable=False, default=False)

    # Reports
    last_report_at = Column(DateTime(timezone=True), nullable=True)
    last_report_month = Column(String(7), nullable=True)  # YYYY-MM in user timezone

    # Reminders
    reminders_enabled = Column(Boolean, nullable=False, default=False)
    remind_morning = Column(String(5), nullable=True)
    remind_evening = Column(String(5), nullable=True)
    weekly_enabled = Column(Boolean, nullable=False, default=False)
    weekly_day = Column(Integer, nullable=True)  # 0 = Sunday .. 6 = Saturday
    weekly_hour = Column(Integer, nullable=True)
    last_morning_sent = Column(DateTime(timezone=True), nullable=True)
    last_evening_sent = Column(DateTime(timezone=True), nullable=True)
    last_weekly_sent = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    dreams = relationship("DreamEntry", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_profile_complete(self) -> bool:
        return bool(self.timezone and self.age_band and self.chronotype and self.wake_time and self.sleep_time)
