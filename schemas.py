# schemas.py
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ANSWER_PATTERN = "^[ABCD]$"


class TestIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: int = Field(..., ge=1)  # minutes
    shuffleQuestions: bool = False

    @field_validator("title")
    @classmethod
    def strip_title(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class TestSettingsIn(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    duration: Optional[int] = Field(None, ge=1)
    shuffleQuestions: Optional[bool] = None


class QuestionIn(BaseModel):
    questionText: str = Field(..., min_length=1)
    optionA: str = Field(..., min_length=1)
    optionB: str = Field(..., min_length=1)
    optionC: str = Field(..., min_length=1)
    optionD: str = Field(..., min_length=1)
    correctAnswer: str = Field(..., pattern=ANSWER_PATTERN)
    marks: int = Field(1, ge=1)
    timeLimit: Optional[int] = Field(None, ge=1)  # seconds

    @field_validator("correctAnswer", mode="before")
    @classmethod
    def normalize_answer(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class AttemptIn(BaseModel):
    studentName: Optional[str] = None

    @field_validator("studentName")
    @classmethod
    def blank_to_none(cls, value):
        if value is not None:
            value = value.strip()
        return value or None


class AttemptUpdate(BaseModel):
    answers: Optional[Dict[str, str]] = None
    score: Optional[int] = Field(None, ge=0)
    totalMarks: Optional[int] = Field(None, ge=0)
    timeTaken: Optional[int] = Field(None, ge=0)
    isCompleted: Optional[bool] = None

    @model_validator(mode="after")
    def score_within_total(self):
        if self.score is not None and self.totalMarks is not None and self.score > self.totalMarks:
            raise ValueError("score cannot exceed totalMarks")
        return self

    def changes(self):
        """Only the fields the client actually sent, nulls dropped."""
        return self.model_dump(exclude_unset=True, exclude_none=True)
