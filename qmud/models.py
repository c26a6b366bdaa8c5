"""Core domain models.

Books, pages, choices, decoded effects and the per-book narrative session.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

StatField = Literal["truth", "coherence", "shadow", "insight", "hp"]

MAX_CHOICES = 6


# ---------------------------------------------------------------------------
# Effects, decoded once from the model's loose JSON (see qmud.effects)
# ---------------------------------------------------------------------------

class Delta(BaseModel):
    """Add `value` to a stat, then clamp."""

    kind: Literal["delta"] = "delta"
    field: StatField
    value: float


class Assign(BaseModel):
    """Set a stat to `value` (after clamping). Raw form: "=0.3"."""

    kind: Literal["assign"] = "assign"
    field: StatField
    value: float


class ItemGrant(BaseModel):
    kind: Literal["give_item"] = "give_item"
    item: str


class ItemRevoke(BaseModel):
    kind: Literal["take_item"] = "take_item"
    item: str


Effect = Annotated[
    Union[Delta, Assign, ItemGrant, ItemRevoke],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

class Choice(BaseModel):
    """A selectable branch on a page."""

    id: str | None = None
    label: str = ""
    effects: list[Effect] = Field(default_factory=list)


class Page(BaseModel):
    """One generated narrative unit. Empty `choices` means a terminal page."""

    page_id: str
    title: str
    prose: str
    illustration_prompt: str | None = None
    effects: list[Effect] = Field(default_factory=list)
    choices: list[Choice] = Field(default_factory=list, max_length=MAX_CHOICES)


# ---------------------------------------------------------------------------
# Items and player
# ---------------------------------------------------------------------------

class Item(BaseModel):
    """An entry in the item catalog. Only `type == "book"` items can be read."""

    id: str
    name: str
    type: str = "misc"
    description: str = ""


class PlayerState(BaseModel):
    """The slice of player state that books read and write."""

    player_id: str = "p"
    name: str = "Reader"
    archetype: str = "Seeker"
    hero_stage: str = "ordinary_world"
    truth: float = 0.5
    coherence: float = 0.0
    shadow: float = 0.0
    insight: int = 0
    hp: int = 100
    inventory: list[str] = Field(default_factory=list)

    def has_item(self, item_id: str) -> bool:
        return item_id in self.inventory

    def add_item(self, item_id: str) -> None:
        if item_id not in self.inventory:
            self.inventory.append(item_id)

    def remove_item(self, item_id: str) -> None:
        if item_id in self.inventory:
            self.inventory.remove(item_id)

    def stats(self) -> dict[str, float | int]:
        return {
            "truth": self.truth,
            "quantum": self.coherence,
            "shadow": self.shadow,
            "insight": self.insight,
            "hp": self.hp,
        }


class SessionState(str, Enum):
    CLOSED = "closed"
    AWAITING_PAGE = "awaiting_page"
    AWAITING_CHOICE = "awaiting_choice"
    ENDED = "ended"


class NarrativeSession(BaseModel):
    """Per-book state: page graph, current pointer and the choice path.

    Serialises (by alias, without `active`) to the snapshot layout
    {bookId, title, seed, pages, current, path, createdAt, lastAt}.
    """

    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(alias="bookId")
    title: str
    seed: str
    pages: dict[str, Page] = Field(default_factory=dict)
    current: str | None = None
    path: list[str] = Field(default_factory=list)
    active: bool = True
    created_at: float = Field(alias="createdAt")
    last_at: float = Field(alias="lastAt")

    @model_validator(mode="after")
    def _current_is_known(self) -> NarrativeSession:
        if self.current is not None and self.current not in self.pages:
            raise ValueError(f"current page {self.current!r} is not in pages")
        return self

    @property
    def current_page(self) -> Page | None:
        if self.current is None:
            return None
        return self.pages.get(self.current)

    def snapshot(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"active"})


class BookSummary(BaseModel):
    title: str
    seed: str
    path: list[str]
    page_count: int
