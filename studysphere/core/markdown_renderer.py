"""Markdown rendering for passage text and question stems.

Passages are authored as plain text with optional markdown; the browser
receives HTML fragments. Raw HTML in the source is not passed through.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from markdown_it import MarkdownIt

from studysphere.core.models import Passage


@dataclass(slots=True)
class MarkdownRenderer:
    """Converts markdown into HTML fragments."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )

    def render_fragment(self, markdown_text: str) -> str:
        sanitized = (markdown_text or "").strip()
        if not sanitized:
            return "<p><em>No content provided.</em></p>"
        return self._markdown.render(sanitized)

    def render_passage(self, passage: Passage) -> dict[str, object]:
        """HTML for the passage body and each question stem."""
        return {
            "text_html": self.render_fragment(passage.text),
            "questions_html": [self.render_fragment(question.text) for question in passage.questions],
        }


# MarkdownIt is safe to share for read-only renders.
renderer = MarkdownRenderer()
