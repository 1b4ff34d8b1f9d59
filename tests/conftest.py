from pathlib import Path
from types import SimpleNamespace

import pytest
from dotenv import load_dotenv

# Optional test-time overrides (e.g. PYDREL_SHOW_WARNINGS=0); settings are read on import
load_dotenv(Path(__file__).with_name(".env"), override=True)

from pydrel import Collection, RelationalModel, event_queue, store  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def clear_store():
    """
    Start and finish every test with an empty identity map and an idle
    event queue, so tests cannot interfere with one another through the
    global store.
    """
    store.reset()
    event_queue.clear()
    yield
    store.reset()
    event_queue.clear()


@pytest.fixture(scope="function")
def zoo():
    """
    ``Person`` owns many ``Pet``s; ``Pet.owner`` is the synthesised reverse
    relation. ``Person`` refers to ``Pet`` by name before ``Pet`` exists.
    """

    class PetCollection(Collection):
        pass

    class Person(RelationalModel):
        relations = [
            {
                "type": "HasMany",
                "key": "pets",
                "related_model": "Pet",
                "collection_type": "PetCollection",
                "reverse_relation": {"key": "owner", "include_in_json": "id"},
            }
        ]

    class Pet(RelationalModel):
        pass

    return SimpleNamespace(Person=Person, Pet=Pet, PetCollection=PetCollection)


class EventLog:
    """Records ``(event_name, *args)`` tuples from an ``all`` subscription."""

    def __init__(self, *targets):
        self.events = []
        for target in targets:
            target.on("all", self._record)

    def _record(self, name, *args):
        self.events.append((name, *args))

    def names(self):
        return [event[0] for event in self.events]


@pytest.fixture(scope="function")
def event_log():
    return EventLog
