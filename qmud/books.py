"""Branching, model-generated books.

A BookReader owns the reader's narrative sessions, one per book, and drives
them through:

    CLOSED ──open──▶ AWAITING_PAGE ──page──▶ AWAITING_CHOICE ──choose──▶ AWAITING_PAGE
                          │                        │
                          └──page, no choices──▶ ENDED

A session is created the first time its book is opened and kept for the
life of the reader (and in the SessionStore when one is given). Closing
only deactivates it; opening or resuming it again re-renders the current
page without a model call.

Every failure (provider, rate limit, unreadable output) becomes a message to
the presentation sink. A chosen choice applies its effects on selection; a
failed generation stores nothing else, so pages, path and the current page
stay as they were and the reader can choose again.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from qmud import prompts
from qmud.effects import EffectsApplier, decode_effects
from qmud.events import EventPublisher, Topics, fire_and_forget
from qmud.llm import LLM, AuthError, LLMError, RateLimited
from qmud.models import (
    MAX_CHOICES,
    BookSummary,
    Choice,
    Item,
    NarrativeSession,
    Page,
    PlayerState,
    SessionState,
)
from qmud.parser import extract_page
from qmud.presentation import PresentationSink
from qmud.storage import SessionStore

logger = logging.getLogger(__name__)

PAGE_REFUSED = "[The page refuses to resolve. Try again.]"


class ChoiceNotFound(LookupError):
    """The reader's input matched none of the current page's choices."""


def stable_seed(player_id: str | None, book_id: str | None) -> str:
    return f"{player_id or 'p'}:{book_id or 'b'}"


def resolve_choice(page: Page, token: str) -> Choice:
    """Match reader input against the page's choices.

    Tried in order: 1-based index, exact id, id prefix, label prefix (all
    case-insensitive). A digit token that is a valid index always wins, even
    over a choice whose id is that same digit.
    """
    token = (token or "").strip()
    if not token:
        raise ChoiceNotFound("Empty choice")

    if re.fullmatch(r"\d+", token):
        idx = int(token)
        if 1 <= idx <= len(page.choices):
            return page.choices[idx - 1]

    low = token.lower()
    for c in page.choices:
        if c.id and c.id.lower() == low:
            return c
    for c in page.choices:
        if c.id and c.id.lower().startswith(low):
            return c
    for c in page.choices:
        if c.label and c.label.lower().startswith(low):
            return c
    raise ChoiceNotFound(f"No choice matches {token!r}")


def normalize_page(data: dict, page_count: int) -> Page:
    """Build a Page from extracted JSON (page_id and prose already checked)."""
    raw_choices = data.get("choices")
    if not isinstance(raw_choices, list):
        raw_choices = []

    choices: list[Choice] = []
    for raw in raw_choices[:MAX_CHOICES]:
        if not isinstance(raw, dict):
            continue
        cid = raw.get("id")
        label = raw.get("label")
        choices.append(Choice(
            id=str(cid) if cid not in (None, "") else None,
            label=str(label) if label else "",
            effects=decode_effects(raw.get("effects")),
        ))

    illustration = data.get("illustration_prompt")
    return Page(
        page_id=str(data["page_id"]),
        title=str(data.get("title") or f"Leaf {page_count + 1}"),
        prose=str(data["prose"]),
        illustration_prompt=str(illustration) if illustration else None,
        effects=decode_effects(data.get("effects")),
        choices=choices,
    )


class BookReader:
    """Reader-facing book commands: open, choose, ask, draw, close, resume, summary.

    Args:
        player:    Player state read by prompts and written by effects.
        items:     Item catalog; books are items with type "book".
        llm:       Text/image generator, or None when the Librarian is offline.
        sink:      Receives narrated text, images and messages.
        publisher: Optional event relay (book events, snapshots, player state).
        store:     Optional snapshot persistence.
        room:      Name of the room the reader is in, for page prompts.
    """

    def __init__(
        self,
        player: PlayerState,
        items: dict[str, Item],
        llm: LLM | None,
        sink: PresentationSink,
        publisher: EventPublisher | None = None,
        store: SessionStore | None = None,
        room: str = "nowhere",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.player = player
        self.items = items
        self.llm = llm
        self.room = room
        self._sink = sink
        self._publisher = publisher
        self._store = store
        self._clock = clock
        self._effects = EffectsApplier(items, publisher)
        self._sessions: dict[str, NarrativeSession] = {}
        self._book_id: str | None = None
        self._pending: set[str] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def session(self) -> NarrativeSession | None:
        if self._book_id is None:
            return None
        return self._sessions.get(self._book_id)

    @property
    def state(self) -> SessionState:
        s = self.session
        if s is None:
            return SessionState.CLOSED
        if s.book_id in self._pending:
            return SessionState.AWAITING_PAGE
        page = s.current_page
        if not s.active or page is None:
            return SessionState.CLOSED
        if page.choices:
            return SessionState.AWAITING_CHOICE
        return SessionState.ENDED

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def available_books(self) -> list[Item]:
        books = []
        for item_id in self.player.inventory:
            item = self.items.get(item_id)
            if item is not None and item.type == "book":
                books.append(item)
        return books

    def list_books(self) -> list[Item]:
        books = self.available_books()
        if not books:
            self._sink.emit("You carry no books. Seek them in the stacks or the Scribe's bazaar.")
            return books
        lines = ["[Books]"]
        lines.extend(f"- {b.name} ({b.id})" for b in books)
        lines.append(
            "Use: open <book>, choose <n|id>, ask <question>, draw, "
            "book close, book resume, book summary"
        )
        self._sink.emit("\n".join(lines))
        return books

    def find_book(self, token: str) -> str | None:
        """Resolve a carried book by id, exact name, or name substring."""
        if not token or not token.strip():
            return None
        low = token.strip().lower()
        for book in self.available_books():
            if book.id.lower() == low or book.name.lower() == low:
                return book.id
        for book in self.available_books():
            if low in book.name.lower():
                return book.id
        return None

    async def open(self, token: str) -> bool:
        book_id = self.find_book(token)
        if book_id is None:
            self._sink.emit("Name the book clearly.")
            return False
        if book_id in self._pending:
            self._sink.emit("The page is still resolving.", "system-message")
            return False

        session = self._ensure_session(book_id)
        if session.current_page is not None:
            self._render(session)
            return True
        if self.llm is None:
            self._sink.emit("This book remains blank without the Librarian's voice (AI is offline).")
            return False
        return await self._generate_page(session)

    async def choose(self, token: str) -> bool:
        s = self.session
        if s is None or not s.active or s.current_page is None:
            self._sink.emit("No book is open.")
            return False
        if s.book_id in self._pending:
            self._sink.emit("The page is still resolving.", "system-message")
            return False
        page = s.current_page
        if not page.choices:
            self._sink.emit("This page offers no choice.")
            return False

        try:
            choice = resolve_choice(page, token)
        except ChoiceNotFound:
            self._sink.emit("Choice not found.")
            return False

        if self.llm is None:
            self._sink.emit("The ink will not move without the Librarian (AI is offline).")
            return False
        self._effects.apply(choice.effects, self.player)
        step = choice.id or str(page.choices.index(choice))
        return await self._generate_page(s, chosen=choice, step=step)

    async def ask(self, question: str) -> str | None:
        s = self.session
        page = s.current_page if s is not None else None
        if page is None:
            self._sink.emit("No book is open.")
            return None
        if self.llm is None:
            self._sink.emit("The pages rustle but do not answer (AI offline).")
            return None

        try:
            answer = await self.llm("book_ask", prompts.ask_prompt(s, self.player, page, question))
        except LLMError as e:
            logger.warning("Book question failed: %s", e)
            self._sink.emit(self._failure_message(e), "system-message")
            return None
        if answer:
            self._sink.emit(answer, "librarian-voice")
        return answer or None

    async def draw(self) -> str | None:
        s = self.session
        page = s.current_page if s is not None else None
        if page is None:
            self._sink.emit("Open a book first.")
            return None
        if self.llm is None:
            self._sink.emit("Illustrations require the Librarian (AI offline).")
            return None

        url = await self.llm.illustrate(prompts.illustration_prompt(s, page))
        if url:
            self._sink.emit(url, "image")
            self._sink.emit("[An illustration bleeds through the page.]", "system-message")
        else:
            self._sink.emit("[The illustration fails to manifest.]", "system-message")
        return url

    def close(self) -> bool:
        s = self.session
        if s is None:
            self._sink.emit("No book is open.")
            return False
        self._publish_book_event(s, "book_close", {"page_id": s.current})
        self._sink.emit(f"You close {s.title}.", "system-message")
        s.active = False
        return True

    def resume(self) -> bool:
        s = self.session
        if s is None:
            self._sink.emit("No book to resume.")
            return False
        s.active = True
        self._render(s)
        return True

    def summary(self) -> BookSummary | None:
        s = self.session
        if s is None:
            self._sink.emit("No book is open.")
            return None
        result = BookSummary(title=s.title, seed=s.seed, path=list(s.path), page_count=len(s.pages))
        self._sink.emit("\n".join([
            f"[{s.title}]",
            f"Seed: {s.seed}",
            f"Path: {' -> '.join(s.path) or '-'}",
            f"Pages: {result.page_count}",
        ]))
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_session(self, book_id: str) -> NarrativeSession:
        previous = self.session
        if previous is not None and previous.book_id != book_id:
            previous.active = False

        session = self._sessions.get(book_id)
        if session is None and self._store is not None:
            session = self._store.load(book_id)
        if session is None:
            now = self._clock()
            session = NarrativeSession(
                book_id=book_id,
                title=self.items[book_id].name,
                seed=stable_seed(self.player.player_id, book_id),
                created_at=now,
                last_at=now,
            )
            self._sessions[book_id] = session
            self._book_id = book_id
            self._publish_book_event(session, "book_open", {})
            self._sink.emit(f"[You open {session.title}.]", "system-message")
        else:
            self._sessions[book_id] = session
            self._book_id = book_id
        session.active = True
        return session

    async def _generate_page(
        self,
        session: NarrativeSession,
        chosen: Choice | None = None,
        step: str | None = None,
    ) -> bool:
        path = session.path + [step] if step is not None else list(session.path)
        self._pending.add(session.book_id)
        try:
            prompt = prompts.page_prompt(session, self.player, path, self.room, chosen)
            raw = await self.llm("book_page", prompt)
        except (LLMError, prompts.PromptError) as e:
            logger.warning("Page generation failed for %s: %s", session.book_id, e)
            self._sink.emit(self._failure_message(e), "system-message")
            return False
        finally:
            self._pending.discard(session.book_id)

        data = extract_page(raw)
        if data is None:
            self._sink.emit(PAGE_REFUSED, "system-message")
            return False
        page = normalize_page(data, len(session.pages))

        if step is not None:
            session.path.append(step)
        if page.page_id in session.pages:
            logger.info("Page id %r reused in %s; replacing stored page", page.page_id, session.book_id)
        self._effects.apply(page.effects, self.player)
        session.pages[page.page_id] = page
        session.current = page.page_id
        session.last_at = self._clock()

        if self._book_id == session.book_id and session.active:
            self._render(session)
        self._publish_book_event(
            session, "book_page", {"page_id": page.page_id, "choice_id": chosen.id if chosen else None}
        )
        self._publish_snapshot(session)
        if self._store is not None:
            self._store.save(session)
        return True

    def _failure_message(self, error: Exception) -> str:
        if isinstance(error, RateLimited):
            return "[The Librarian is cooling down. Try again in a moment.]"
        if isinstance(error, AuthError):
            return "[The Librarian does not recognise your key. Check your API key.]"
        return PAGE_REFUSED

    def _render(self, session: NarrativeSession) -> None:
        page = session.current_page
        if page is None:
            return
        self._sink.emit(f"[{session.title}: {page.title}]", "room-name")
        self._sink.emit(page.prose, "librarian-voice")
        if page.choices:
            lines = ["Choices:"]
            lines.extend(f"{i}. {c.label or c.id}" for i, c in enumerate(page.choices, 1))
            self._sink.emit("\n".join(lines))
        else:
            self._sink.emit("The page offers contemplation, not decision.")

    def _public_player(self) -> dict:
        return {"id": self.player.player_id, "name": self.player.name, **self.player.stats()}

    def _publish_book_event(self, session: NarrativeSession, event_type: str, payload: dict) -> None:
        if self._publisher is None:
            return
        event = {
            "event_type": event_type,
            "timestamp": self._clock(),
            "player": self._public_player(),
            "payload": {**payload, "path": list(session.path)},
        }
        fire_and_forget(self._publisher.publish(Topics.book_events(session.book_id), event))

    def _publish_snapshot(self, session: NarrativeSession) -> None:
        if self._publisher is None:
            return
        event = {
            "event_type": "book_snapshot",
            "timestamp": self._clock(),
            "player": self._public_player(),
            "payload": {
                "book": {"id": session.book_id, "title": session.title, "seed": session.seed},
                "current": session.current,
                "path": list(session.path),
            },
        }
        fire_and_forget(self._publisher.publish(Topics.book_state(session.book_id), event))
