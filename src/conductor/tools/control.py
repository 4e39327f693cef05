"""Tools the model uses to steer the task rather than touch the workspace.

They are registered like any other tool so their schemas reach the provider
and their arguments are validated, but the controller acts on them instead
of running the handlers for their side effects.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ATTEMPT_COMPLETION = "attempt_completion"
ASK_FOLLOWUP_QUESTION = "ask_followup_question"
CONTROL_TOOLS = frozenset({ATTEMPT_COMPLETION, ASK_FOLLOWUP_QUESTION})


class AttemptCompletionArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    result: str = Field(description="Summary of what was accomplished.")

    @field_validator("result")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("result must not be empty")
        return value


class AskFollowupQuestionArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(description="Question for the user.")

    @field_validator("question")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("question must not be empty")
        return value


def attempt_completion(args: AttemptCompletionArgs) -> dict[str, Any]:
    return {"result": args.result.strip()}


def ask_followup_question(args: AskFollowupQuestionArgs) -> dict[str, Any]:
    return {"question": args.question.strip()}
