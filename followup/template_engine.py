"""
CV Follow-up Mailer -- Template Engine

Renders the CV analysis follow-up email from an entry's template data.

Responsibilities:
  1. Load HTML and plain-text templates from templates/ using Jinja2
  2. Normalize the analysis results into a stable template context
  3. Build the subject line from the overall score
  4. Return a RenderedEmail (subject, HTML body, text body)

Usage:
    from followup.template_engine import TemplateEngine

    engine = TemplateEngine()
    rendered = engine.render_email(entry.template_data)
    print(rendered.subject)       # Your CV Analysis Results - 82/100
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .config import SenderInfo, TemplatePaths


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRIORITY_LABELS = {
    "high": "High priority",
    "medium": "Medium priority",
    "low": "Low priority",
}

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_score(score: Any) -> str:
    """Format a 0-100 score as an integer string.  Empty for missing values.

    >>> format_score(81.6)
    '82'
    >>> format_score(None)
    ''
    """
    if score is None or score == "":
        return ""
    try:
        return str(int(round(float(score))))
    except (TypeError, ValueError):
        return ""


def priority_label(priority: str | None) -> str:
    """Display label for an improvement priority."""
    if not priority:
        return ""
    return _PRIORITY_LABELS.get(str(priority).lower(), str(priority).capitalize())


def build_subject(overall_score: Any) -> str:
    """Subject line: 'Your CV Analysis Results - 82/100'."""
    score = format_score(overall_score)
    if not score:
        return "Your CV Analysis Results"
    return f"Your CV Analysis Results - {score}/100"


def _sorted_improvements(improvements: list[Any]) -> list[dict[str, Any]]:
    """Keep dict improvements only, highest priority first (stable)."""
    items = [i for i in improvements if isinstance(i, dict)]
    return sorted(
        items,
        key=lambda i: _PRIORITY_ORDER.get(str(i.get("priority", "")).lower(), 3),
    )


# ---------------------------------------------------------------------------
# Rendered output
# ---------------------------------------------------------------------------

@dataclass
class RenderedEmail:
    """A fully rendered follow-up email."""
    subject: str
    html: str
    text: str


# ---------------------------------------------------------------------------
# TemplateEngine
# ---------------------------------------------------------------------------

class TemplateEngine:
    """Jinja2-based renderer for the CV analysis follow-up email.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the templates/ directory.
    """

    def __init__(
        self,
        paths: TemplatePaths | None = None,
        sender: SenderInfo | None = None,
    ) -> None:
        self.paths = paths or TemplatePaths()
        self.sender = sender or SenderInfo()
        self.template_dir: Path = self.paths.resolved_dir

        # HTML templates are autoescaped: names and feedback come from
        # candidate uploads.
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(enabled_extensions=("html",)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_score"] = format_score
        self.env.filters["priority_label"] = priority_label

    def render_email(self, template_data: Mapping[str, Any]) -> RenderedEmail:
        """Render subject, HTML and text bodies.

        Raises:
            jinja2.TemplateNotFound: If a configured template is missing.
        """
        context = self._build_context(template_data)
        html = self.env.get_template(self.paths.html_template).render(**context)
        text = self.env.get_template(self.paths.text_template).render(**context)
        return RenderedEmail(
            subject=build_subject(template_data.get("overall_score")),
            html=html,
            text=text,
        )

    def _build_context(self, data: Mapping[str, Any]) -> dict[str, Any]:
        first_name = (data.get("first_name") or "").strip()
        return {
            "greeting_name": first_name or "there",
            "full_name": data.get("full_name") or first_name,
            "overall_score": format_score(data.get("overall_score")),
            "ats_compatibility": format_score(data.get("ats_compatibility")),
            "strengths": [str(s) for s in data.get("strengths") or []],
            "improvements": _sorted_improvements(list(data.get("improvements") or [])),
            "detailed_feedback": data.get("detailed_feedback") or "",
            "sender_name": self.sender.name,
            "sender_website": self.sender.website,
        }
