"""Prompt construction and the static template used as a last-resort body."""

from __future__ import annotations

import textwrap
from string import Template

from content_pipeline.jobs.backend.base import GeneratedContent
from content_pipeline.jobs.models import JobPayload

DEFAULT_PROMPT_TEMPLATE = (
    "Write a well-structured, informative article about $topic. "
    "Include an engaging title, an introduction, several body sections "
    "and a conclusion."
)
SIMPLIFIED_PROMPT_TEMPLATE = "Write a short, plain article about $topic with a title."

TEMPLATE_MODEL = "template"

TEMPLATE_TITLE_MAX_CHARS = 200

_TEMPLATE_TITLE_SUFFIX = ": An Overview"
_ELLIPSIS = "..."
_TEMPLATE_BODY = Template(
    """\
$topic is a subject that keeps coming up for teams and readers alike. \
This overview collects the essentials so the topic can be revisited in depth later.

Background

$topic has developed over time as practice and tooling matured. \
Understanding where it came from helps explain the choices people make today.

Key points

The most useful ideas around $topic are the ones that can be applied directly: \
start small, measure the result and adjust based on what is learned.

Conclusion

$topic rewards steady attention. This article was produced from a standard template \
and is queued for editorial review.""",
)


def build_prompt(payload: JobPayload, *, simplified: bool = False) -> str:
    """Render the generation prompt for a payload.

    Unknown placeholders in a caller-provided template are left untouched.
    """

    if simplified:
        return Template(SIMPLIFIED_PROMPT_TEMPLATE).safe_substitute(topic=payload.topic)
    template = payload.prompt_template or DEFAULT_PROMPT_TEMPLATE
    return Template(template).safe_substitute(topic=payload.topic)


def render_template_content(
    payload: JobPayload,
    *,
    max_title_chars: int = TEMPLATE_TITLE_MAX_CHARS,
) -> GeneratedContent:
    """Static article for the topic; the title never exceeds max_title_chars."""

    topic = payload.topic.strip() or "Untitled topic"
    return GeneratedContent(
        title=template_title(topic, max_title_chars=max_title_chars),
        body=_TEMPLATE_BODY.substitute(topic=topic),
        model=TEMPLATE_MODEL,
        metadata={"template_fallback": True},
    )


def template_title(topic: str, *, max_title_chars: int) -> str:
    title = f"{topic}{_TEMPLATE_TITLE_SUFFIX}"
    if len(title) <= max_title_chars:
        return title
    room = max_title_chars - len(_TEMPLATE_TITLE_SUFFIX)
    if room <= 2 * len(_ELLIPSIS):
        return _shorten(topic, max_title_chars)
    return f"{_shorten(topic, room)}{_TEMPLATE_TITLE_SUFFIX}"


def _shorten(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    if width <= len(_ELLIPSIS):
        return text[:width]
    shortened = textwrap.shorten(text, width=width, placeholder=_ELLIPSIS)
    if shortened == _ELLIPSIS:
        # One word longer than the width: cut inside it.
        return text[: width - len(_ELLIPSIS)].rstrip() + _ELLIPSIS
    return shortened
