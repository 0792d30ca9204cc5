from __future__ import annotations

import re
from typing import Protocol

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from deepresearch.models.session import ResearchSession

FOOTER_TEXT = "Generated by Multi-API Deep Research Assistant"

_LATIN1_REPLACEMENTS = {
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "–": "-",
    "—": "-",
    "…": "...",
    "•": "-",
    " ": " ",
    "→": "->",
}

_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET = re.compile(r"^(\s*)[-*+]\s+(.*)$")
_TABLE_SEPARATOR = re.compile(r"^\|?\s*:?-{3,}")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")


class ReportRenderer(Protocol):
    def render(self, session: ResearchSession) -> bytes: ...


def to_latin1(text: str) -> str:
    """Fold text into the Latin-1 range the core PDF fonts can draw."""
    for src, dst in _LATIN1_REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode("latin-1", "replace").decode("latin-1")


def clean_markdown(text: str) -> str:
    text = _LINK.sub(r"\1", text)
    for marker in ("**", "__", "`"):
        text = text.replace(marker, "")
    return text.replace("*", "")


class _ReportPDF(FPDF):
    def footer(self) -> None:
        self.set_y(-15)
        self.set_font("helvetica", size=8)
        self.set_text_color(128, 128, 128)
        self.cell(0, 5, f"Page {self.page_no()} of {{nb}}", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.cell(0, 5, FOOTER_TEXT, align="C")


class PdfReportRenderer:
    """Plain A4 report: summary, refinement Q&A, then one section per provider."""

    margin = 20

    def render(self, session: ResearchSession) -> bytes:
        pdf = _ReportPDF(orientation="portrait", unit="mm", format="A4")
        pdf.set_margins(self.margin, self.margin, self.margin)
        pdf.set_auto_page_break(auto=True, margin=self.margin)
        pdf.add_page()

        pdf.set_fill_color(41, 128, 185)
        pdf.rect(0, 0, pdf.w, 40, "F")
        pdf.set_text_color(255, 255, 255)
        pdf.set_font("helvetica", "B", 24)
        pdf.set_xy(self.margin, 15)
        pdf.cell(0, 10, "Deep Research Report")
        pdf.set_text_color(0, 0, 0)
        pdf.set_y(50)

        self._heading(pdf, "Research Summary", 16)
        self._paragraph(pdf, f"Initial Prompt: {session.initial_prompt}")
        if session.refined_prompt and session.refined_prompt != session.initial_prompt:
            self._paragraph(pdf, f"Refined Prompt: {session.refined_prompt}")
        self._paragraph(pdf, f"Date: {session.created_at:%Y-%m-%d %H:%M} UTC")
        self._paragraph(pdf, f"Status: {session.status.value.upper()}")

        if session.refinement_questions:
            pdf.ln(4)
            self._heading(pdf, "Refinement Questions & Answers", 16)
            for index, question in enumerate(session.refinement_questions, 1):
                self._heading(pdf, f"{index}. {question.question}", 11)
                if question.answer:
                    self._paragraph(pdf, f"Answer: {question.answer}")

        for title, body, color in (
            ("OpenAI Research Results", session.openai_result, (41, 128, 185)),
            ("Google Gemini Research Results", session.gemini_result, (219, 68, 55)),
        ):
            if not body:
                continue
            pdf.ln(6)
            self._heading(pdf, title, 16)
            pdf.set_draw_color(*color)
            pdf.line(self.margin, pdf.get_y(), pdf.w - self.margin, pdf.get_y())
            pdf.ln(3)
            self._markdown(pdf, body)

        return bytes(pdf.output())

    def _heading(self, pdf: FPDF, text: str, size: int) -> None:
        pdf.set_font("helvetica", "B", size)
        pdf.set_x(self.margin)
        pdf.multi_cell(0, size * 0.5, to_latin1(clean_markdown(text)), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(2)

    def _paragraph(self, pdf: FPDF, text: str, *, indent: float = 0, size: int = 10) -> None:
        pdf.set_font("helvetica", size=size)
        pdf.set_x(self.margin + indent)
        pdf.multi_cell(0, 5, to_latin1(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.ln(1)

    def _markdown(self, pdf: FPDF, text: str) -> None:
        in_code = False
        for raw in text.splitlines():
            line = raw.rstrip()
            if line.strip().startswith("```"):
                in_code = not in_code
                continue
            if in_code:
                pdf.set_font("courier", size=9)
                pdf.set_x(self.margin + 4)
                pdf.multi_cell(0, 4, to_latin1(line) or " ", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
                continue
            if not line.strip():
                pdf.ln(2)
                continue

            heading = _HEADING.match(line)
            if heading:
                sizes = [14, 13, 12, 11, 10, 10]
                self._heading(pdf, heading.group(2), sizes[len(heading.group(1)) - 1])
                continue

            bullet = _BULLET.match(line)
            if bullet:
                depth = len(bullet.group(1).expandtabs(4)) // 2
                self._paragraph(pdf, f"- {clean_markdown(bullet.group(2))}", indent=4 + depth * 4)
                continue

            stripped = line.strip()
            if stripped.startswith("|"):
                if _TABLE_SEPARATOR.match(stripped):
                    continue
                cells = [clean_markdown(c.strip()) for c in stripped.strip("|").split("|")]
                self._paragraph(pdf, " | ".join(cells), size=9)
                continue

            if stripped.startswith(">"):
                self._paragraph(pdf, clean_markdown(stripped.lstrip("> ")), indent=4)
                continue

            self._paragraph(pdf, clean_markdown(stripped))
