"""Handlebars prompt templates for book pages, questions and illustrations."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars

from qmud.models import Choice, NarrativeSession, Page, PlayerState

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


PAGE_PROMPT = """\
You are the Quantum Librarian generating a branching page in an in-world book.
Book Title: "{{{book.title}}}"
Book ID: "{{{book.id}}}"
Seed: "{{{book.seed}}}"
Room: "{{{room}}}"
Reader: {{{reader.name}}} ({{{reader.archetype}}}), Stage: {{{reader.stage}}}
Stats: {{{stats}}}
Path so far (choice ids): {{{path}}}
{{#if chosen}}
Last choice taken: {{{chosen}}}
{{/if}}

Return ONLY a JSON object (no markdown, no commentary) with this exact shape:
{
  "page_id": "short_slug_or_uuid",
  "title": "short page title",
  "prose": "at most 160 words, atmospheric, second-person present, consistent with the book's theme",
  "illustration_prompt": "a compact visual prompt for an illustration of this page",
  "effects": { "truth": 0.0, "quantum": {"coherence": 0.0}, "shadow": 0.0, "insight": 0, "hp": 0 },
  "choices": [
    { "id": "a1", "label": "Do X", "effects": {"insight": 4} },
    { "id": "a2", "label": "Do Y" }
  ]
}
"effects" is optional. Use "=0.5" instead of a number to set a stat outright.
Keep choices 2-4 entries. If the story should end, return an empty array for "choices".\
"""

ASK_PROMPT = """\
As the narrator spirit of "{{{book.title}}}", answer the reader briefly (at most 80 words), in-voice.
Reader: {{{reader.name}}} ({{{reader.archetype}}}), Stage: {{{reader.stage}}}
Current page title: {{{page.title}}}
Question: {{{question}}}
Avoid spoilers; give a nudge or luminous hint.\
"""

ILLUSTRATION_PROMPT = """\
{{{subject}}}

an illustration from the {{{book.title}}}, mythic, chiaroscuro, etching-like, cinematic\
"""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context)).strip()
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def _book_ctx(session: NarrativeSession) -> dict[str, str]:
    return {"id": session.book_id, "title": session.title, "seed": session.seed}


def _reader_ctx(player: PlayerState) -> dict[str, str]:
    return {"name": player.name, "archetype": player.archetype, "stage": player.hero_stage}


def page_prompt(
    session: NarrativeSession,
    player: PlayerState,
    path: list[str],
    room: str,
    chosen: Choice | None = None,
) -> str:
    ctx: dict[str, Any] = {
        "book": _book_ctx(session),
        "reader": _reader_ctx(player),
        "room": room,
        "stats": json.dumps(player.stats()),
        "path": json.dumps(path),
        "chosen": json.dumps({"id": chosen.id, "label": chosen.label}) if chosen else "",
    }
    return render_prompt(PAGE_PROMPT, ctx)


def ask_prompt(session: NarrativeSession, player: PlayerState, page: Page, question: str) -> str:
    ctx = {
        "book": _book_ctx(session),
        "reader": _reader_ctx(player),
        "page": {"title": page.title},
        "question": question,
    }
    return render_prompt(ASK_PROMPT, ctx)


def illustration_prompt(session: NarrativeSession, page: Page) -> str:
    subject = page.illustration_prompt or page.prose or page.title or session.title
    return render_prompt(ILLUSTRATION_PROMPT, {"subject": subject, "book": _book_ctx(session)})
