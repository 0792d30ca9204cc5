from __future__ import annotations

import asyncio
import html as html_lib
from datetime import datetime

from deepresearch.errors import DeliveryError
from deepresearch.models.session import ResearchSession
from deepresearch.services import logger as log_service
from deepresearch.services.notifier import Attachment, Notifier
from deepresearch.services.pdf_renderer import ReportRenderer

SUBJECT_PROMPT_CHARS = 50


def _completed_on(session: ResearchSession) -> datetime:
    return session.completed_at or session.updated_at


def build_subject(session: ResearchSession) -> str:
    prompt = session.initial_prompt
    suffix = "..." if len(prompt) > SUBJECT_PROMPT_CHARS else ""
    return f"Your Research Report: {prompt[:SUBJECT_PROMPT_CHARS]}{suffix}"


def build_text_summary(session: ResearchSession) -> str:
    lines = ["Research Report", "", f"Initial Prompt: {session.initial_prompt}", ""]

    if session.refinement_questions:
        lines.append("Refinement Questions:")
        for index, question in enumerate(session.refinement_questions, 1):
            lines.append(f"{index}. {question.question}")
            if question.answer:
                lines.append(f"   Answer: {question.answer}")
        lines.append("")

    lines.append(f"Research completed on: {_completed_on(session):%Y-%m-%d %H:%M} UTC")
    lines.append("")
    lines.append("Key Insights:")
    lines.append("- Research conducted with OpenAI")
    lines.append("- Cross-referenced with Google Gemini")
    lines.append("- Full detailed report attached as PDF")
    lines.append("")
    lines.append("Please find the complete research report attached.")
    return "\n".join(lines) + "\n"


def build_html_summary(session: ResearchSession) -> str:
    esc = html_lib.escape
    parts = [
        "<html><body>",
        "<h1>Your Research Report is Ready</h1>",
        f"<p><strong>Your Research Prompt:</strong><br>{esc(session.initial_prompt)}</p>",
    ]
    if session.refinement_questions:
        parts.append("<h3>Refinement Questions</h3><ol>")
        for question in session.refinement_questions:
            answer = f"<br><strong>A:</strong> {esc(question.answer)}" if question.answer else ""
            parts.append(f"<li>{esc(question.question)}{answer}</li>")
        parts.append("</ol>")
    parts.append(f"<p><strong>Completed:</strong> {_completed_on(session):%Y-%m-%d %H:%M} UTC</p>")
    parts.append("<p>The complete research report is attached as a PDF document.</p>")
    parts.append(f"<p style=\"color:#666;font-size:12px\">Session ID: {esc(session.id)}</p>")
    parts.append("</body></html>")
    return "\n".join(parts)


class ReportDelivery:
    """Render a completed session and hand it to the notifier. No retries."""

    def __init__(self, renderer: ReportRenderer, notifier: Notifier):
        self.renderer = renderer
        self.notifier = notifier

    async def deliver(self, session: ResearchSession) -> None:
        try:
            document = await asyncio.to_thread(self.renderer.render, session)
        except Exception as e:
            raise DeliveryError(f"Report rendering failed: {e}") from e

        log_service.log_event(
            event_type="report_rendered",
            message="Research report rendered",
            session_id=session.id,
            size_bytes=len(document),
        )

        attachment = Attachment(filename=f"research-report-{session.id}.pdf", content=document)
        try:
            sent = await self.notifier.send(
                session.user_email,
                build_subject(session),
                build_text_summary(session),
                build_html_summary(session),
                attachment,
            )
        except DeliveryError:
            raise
        except Exception as e:
            raise DeliveryError(f"Email delivery failed: {e}") from e

        if not sent:
            raise DeliveryError(f"Email delivery to {session.user_email} was rejected")
