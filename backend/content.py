"""Built-in item catalog and the reader's starting inventory."""

from qmud.models import Item

DEFAULT_ITEMS: dict[str, Item] = {
    item.id: item
    for item in [
        Item(id="mirror_shard", name="Mirror Shard", type="evolution",
             description="A sliver of possibility that reflects who you might be."),
        Item(id="quantum_key", name="Quantum Key", type="evolution",
             description="Unlocks doors that exist and don't."),
        Item(id="tea_clarity", name="Tea of Clarity", type="consumable", description="+Truth"),
        Item(id="ink_of_nyx", name="Ink of Nyx", type="consumable", description="+Shadow integration"),
        Item(id="folio_notes", name="Folio of Notes", type="consumable", description="+Insight"),
        Item(id="codex_paths", name="Codex of Forking Paths", type="book",
             description="A living labyrinth on paper. Opens new routes."),
        Item(id="mirror_grimoire", name="Mirror Grimoire", type="book",
             description="Spells that rearrange what the page believes."),
    ]
}

STARTING_INVENTORY = ["codex_paths", "mirror_grimoire"]
