"""Stat effects: decoding the model's loose effects object and applying it.

Raw effects as the model writes them:

    {"truth": 0.1, "quantum": {"coherence": -0.05}, "shadow": "=0.3",
     "insight": 4, "hp": -10, "give_item": "folio_notes"}

Numbers are deltas, "=N" strings are absolute assignments. `quantum` may be
a number, an "=N" string or an object with a `coherence` key; a dotted
`quantum.coherence` key is also accepted. All of them target coherence and
are applied cumulatively.

Domains:
    truth, coherence, shadow   clamped to [0, 1]
    insight                    non-negative integer (floored)
    hp                         integer in [0, 100] (floored)
"""

from __future__ import annotations

import logging
import math
import re
import time
from typing import Any

from qmud.events import EventPublisher, Topics, fire_and_forget
from qmud.models import Assign, Delta, Effect, Item, ItemGrant, ItemRevoke, PlayerState

logger = logging.getLogger(__name__)

_ASSIGN_RE = re.compile(r"^\s*=\s*(-?\d+(?:\.\d+)?)\s*$")

_SCALAR_FIELDS = ("truth", "shadow", "insight", "hp")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _decode_value(field: str, value: Any) -> Effect | None:
    if _is_number(value):
        return Delta(field=field, value=float(value))
    if isinstance(value, str):
        m = _ASSIGN_RE.match(value)
        if m:
            return Assign(field=field, value=float(m.group(1)))
    return None


def decode_effects(raw: Any) -> list[Effect]:
    """Decode a raw effects object. Unknown keys and bad values are dropped."""
    if not isinstance(raw, dict):
        return []

    effects: list[Effect] = []

    def _add(effect: Effect | None) -> None:
        if effect is not None:
            effects.append(effect)

    for field in _SCALAR_FIELDS:
        if field in raw:
            _add(_decode_value(field, raw[field]))

    quantum = raw.get("quantum")
    if isinstance(quantum, dict):
        if "coherence" in quantum:
            _add(_decode_value("coherence", quantum["coherence"]))
    elif quantum is not None:
        _add(_decode_value("coherence", quantum))
    if "quantum.coherence" in raw:
        _add(_decode_value("coherence", raw["quantum.coherence"]))

    give = raw.get("give_item")
    if isinstance(give, str) and give:
        effects.append(ItemGrant(item=give))
    take = raw.get("take_item")
    if isinstance(take, str) and take:
        effects.append(ItemRevoke(item=take))
    return effects


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------

def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def _settle(field: str, value: float) -> float | int:
    if field == "insight":
        return max(0, math.floor(value))
    if field == "hp":
        return max(0, min(100, math.floor(value)))
    return _clamp01(value)


class EffectsApplier:
    """Applies decoded effects to a PlayerState.

    New stat values are computed first and written together, so a failure
    while computing leaves the player untouched. Item ids missing from the
    catalog are ignored.
    """

    def __init__(
        self,
        items: dict[str, Item],
        publisher: EventPublisher | None = None,
    ) -> None:
        self._items = items
        self._publisher = publisher

    def apply(self, effects: list[Effect], player: PlayerState) -> None:
        if not effects:
            return

        values: dict[str, float | int] = {}
        grants: list[str] = []
        revokes: list[str] = []
        for effect in effects:
            if isinstance(effect, Delta):
                current = values.get(effect.field, getattr(player, effect.field))
                values[effect.field] = _settle(effect.field, current + effect.value)
            elif isinstance(effect, Assign):
                values[effect.field] = _settle(effect.field, effect.value)
            elif effect.item not in self._items:
                logger.debug("Ignoring unknown item %r in effects", effect.item)
            elif isinstance(effect, ItemGrant):
                grants.append(effect.item)
            else:
                revokes.append(effect.item)

        for field, value in values.items():
            setattr(player, field, value)
        for item_id in grants:
            player.add_item(item_id)
        for item_id in revokes:
            player.remove_item(item_id)

        self._publish(player)

    def _publish(self, player: PlayerState) -> None:
        if self._publisher is None:
            return
        event = {
            "event_type": "book_effects",
            "timestamp": time.time(),
            "payload": {"player_id": player.player_id, **player.stats()},
        }
        fire_and_forget(self._publisher.publish(Topics.player_state(player.player_id), event))
