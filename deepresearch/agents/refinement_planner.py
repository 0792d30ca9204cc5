from __future__ import annotations

import re
import time
from typing import Any, Sequence

from deepresearch.models.session import RefinementQuestion
from deepresearch.services import logger as log_service
from deepresearch.services.prompt_store import render_prompt

NO_REFINEMENT_SENTINEL = "NO_REFINEMENT_NEEDED"

_QUESTION_LINE = re.compile(r"^\d+[.)]\s+")


def parse_refinement_questions(text: str) -> list[RefinementQuestion]:
    """Extract numbered clarifying questions from a planner response.

    The sentinel anywhere in the text wins over any numbered lines.
    """
    if not text or NO_REFINEMENT_SENTINEL in text:
        return []

    questions: list[RefinementQuestion] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or not _QUESTION_LINE.match(stripped):
            continue
        question = _QUESTION_LINE.sub("", stripped, count=1).strip()
        questions.append(RefinementQuestion(id=f"q{len(questions) + 1}", question=question))
    return questions


def compose_refined_prompt(
    initial_prompt: str, questions: Sequence[RefinementQuestion]
) -> str:
    """Fold answered questions into the initial prompt, in question order."""
    if not questions:
        return initial_prompt

    pairs = "\n\n".join(f"Q: {q.question}\nA: {q.answer or ''}" for q in questions)
    return f"{initial_prompt}\n\nAdditional context:\n{pairs}"


class RefinementPlanner:
    """Asks an LLM whether a prompt needs clarifying questions.

    Fails open: any provider error yields no questions so the user can go
    straight to research.
    """

    name = "refinement_planner"

    def __init__(self, client: Any, model: str):
        self.client = client
        self.model = model

    async def plan_refinement(self, prompt: str) -> list[RefinementQuestion]:
        t0 = time.monotonic()
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": render_prompt(
                            "refinement.system_prompt", sentinel=NO_REFINEMENT_SENTINEL
                        ),
                    },
                    {
                        "role": "user",
                        "content": render_prompt("refinement.user_prompt", prompt=prompt),
                    },
                ],
            )
            text = completion.choices[0].message.content or ""
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            return []

        log_service.log_llm_call(
            model=self.model,
            caller=self.name,
            duration_ms=int((time.monotonic() - t0) * 1000),
            output_chars=len(text),
        )
        return parse_refinement_questions(text)
