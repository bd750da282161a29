"""
Markdown to HTML conversion for work item descriptions and history entries.
"""

from __future__ import annotations

import markdown


class MarkdownConverter:
    """Renders GitHub-flavoured markdown as the HTML Azure DevOps stores."""

    extensions: list[str]

    def __init__(self, extensions: list[str] | None = None) -> None:
        self.extensions = extensions if extensions is not None else ["tables", "fenced_code", "sane_lists"]

    def to_markup(self, text: str) -> str:
        if not text:
            return ""
        return markdown.markdown(text, extensions=self.extensions)
