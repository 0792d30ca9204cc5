from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ResearchStatus(str, Enum):
    PENDING = "pending"
    REFINING = "refining"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EMAIL_SENT = "email_sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchStatus.EMAIL_SENT, ResearchStatus.FAILED)


# Forward progression order; failed sits outside it as a terminal sink.
STATUS_RANK: dict[ResearchStatus, int] = {
    ResearchStatus.PENDING: 0,
    ResearchStatus.REFINING: 1,
    ResearchStatus.PROCESSING: 2,
    ResearchStatus.COMPLETED: 3,
    ResearchStatus.EMAIL_SENT: 4,
}

ALLOWED_TRANSITIONS: dict[ResearchStatus, frozenset[ResearchStatus]] = {
    ResearchStatus.PENDING: frozenset(
        {ResearchStatus.REFINING, ResearchStatus.PROCESSING, ResearchStatus.FAILED}
    ),
    ResearchStatus.REFINING: frozenset({ResearchStatus.PROCESSING, ResearchStatus.FAILED}),
    ResearchStatus.PROCESSING: frozenset({ResearchStatus.COMPLETED, ResearchStatus.FAILED}),
    ResearchStatus.COMPLETED: frozenset({ResearchStatus.EMAIL_SENT, ResearchStatus.FAILED}),
    ResearchStatus.EMAIL_SENT: frozenset(),
    ResearchStatus.FAILED: frozenset(),
}


def can_transition(current: ResearchStatus, target: ResearchStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Coerce any stored timestamp shape into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings, epoch seconds, ``{"_seconds": ...}``
    style mappings produced by document stores, and SDK timestamp objects
    exposing ``to_datetime()`` or ``timestamp()``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValueError(f"Unsupported timestamp value: {value!r}") from exc
    if isinstance(value, Mapping):
        for seconds_key, nanos_key in (("_seconds", "_nanoseconds"), ("seconds", "nanos")):
            if seconds_key in value:
                seconds = float(value[seconds_key]) + float(value.get(nanos_key) or 0) / 1e9
                return datetime.fromtimestamp(seconds, tz=timezone.utc)
    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        return _as_utc(to_datetime())
    timestamp = getattr(value, "timestamp", None)
    if callable(timestamp):
        return datetime.fromtimestamp(float(timestamp()), tz=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RefinementQuestion(CamelModel):
    id: str
    question: str
    answer: Optional[str] = None

    @property
    def is_answered(self) -> bool:
        return bool(self.answer and self.answer.strip())


class ResearchSession(CamelModel):
    """Aggregate root for one research request and its lifecycle."""

    id: str
    user_id: str
    user_email: str
    initial_prompt: str
    refined_prompt: Optional[str] = None
    refinement_questions: list[RefinementQuestion] = Field(default_factory=list)
    openai_result: Optional[str] = None
    gemini_result: Optional[str] = None
    status: ResearchStatus = ResearchStatus.PENDING
    created_at: datetime
    updated_at: datetime
    research_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    pdf_url: Optional[str] = None
    error: Optional[str] = None

    @field_validator(
        "created_at",
        "updated_at",
        "research_started_at",
        "completed_at",
        "email_sent_at",
        mode="before",
    )
    @classmethod
    def _normalize_timestamps(cls, value: Any) -> Optional[datetime]:
        return normalize_timestamp(value)

    def find_question(self, question_id: str) -> Optional[RefinementQuestion]:
        for question in self.refinement_questions:
            if question.id == question_id:
                return question
        return None

    def all_questions_answered(self) -> bool:
        return all(q.is_answered for q in self.refinement_questions)

    def next_unanswered_question(self) -> Optional[RefinementQuestion]:
        for question in self.refinement_questions:
            if not question.is_answered:
                return question
        return None

    def to_record(self) -> dict[str, Any]:
        """Snake-case record for the session store."""
        record = self.model_dump(mode="python")
        record["status"] = self.status.value
        return record
