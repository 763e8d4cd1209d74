"""Length and placeholder checks for generated content."""

from __future__ import annotations

from content_pipeline.config import ValidationSettings
from content_pipeline.jobs.backend.base import ContentValidationError, GeneratedContent

_PLACEHOLDER_MARKERS: tuple[str, ...] = (
    "lorem ipsum",
    "[insert",
    "as an ai language model",
)


class LengthContentValidator:
    """Default validator; relaxed mode lowers the minimums and skips placeholder checks."""

    def __init__(self, settings: ValidationSettings | None = None) -> None:
        self.settings = settings or ValidationSettings()

    def validate(self, content: GeneratedContent, *, relaxed: bool) -> None:
        title = content.title.strip()
        body = content.body.strip()
        min_title = (
            self.settings.relaxed_min_title_chars if relaxed else self.settings.min_title_chars
        )
        min_body = self.settings.relaxed_min_body_chars if relaxed else self.settings.min_body_chars

        if len(title) < min_title:
            raise ContentValidationError(
                f"Title too short: {len(title)} < {min_title} chars",
                reason_code="title_too_short",
            )
        if len(title) > self.settings.max_title_chars:
            raise ContentValidationError(
                f"Title too long: {len(title)} > {self.settings.max_title_chars} chars",
                reason_code="title_too_long",
            )
        if len(body) < min_body:
            raise ContentValidationError(
                f"Body too short: {len(body)} < {min_body} chars",
                reason_code="body_too_short",
            )
        if relaxed:
            return
        haystack = f"{title}\n{body}".lower()
        for marker in _PLACEHOLDER_MARKERS:
            if marker in haystack:
                raise ContentValidationError(
                    f"Placeholder text found: {marker!r}",
                    reason_code="placeholder_text",
                )
