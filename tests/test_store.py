from types import SimpleNamespace

import pytest

from pydrel import settings
from pydrel import (
    Collection,
    DuplicateIdentity,
    HasMany,
    HasOne,
    RelationalModel,
    relation_type_store,
    store,
)


# ──────────────────────────────────────────────────────────────────────
# Identity map
# ──────────────────────────────────────────────────────────────────────


def test_duplicate_id_is_rejected_and_first_kept(zoo):
    """
    A second live instance with the same id fails before anything is
    written; the first instance stays registered and untouched.
    """
    person = zoo.Person({"id": 5, "name": "Ann"})

    with pytest.raises(DuplicateIdentity):
        zoo.Person({"id": 5, "name": "Impostor"})

    assert zoo.Person.find(5) is person
    assert person.get("name") == "Ann"
    assert len(store.get_collection(zoo.Person)) == 1


def test_duplicate_id_on_set_leaves_state_unchanged(zoo):
    first = zoo.Pet({"id": 1})
    second = zoo.Pet({"id": 2, "name": "Rex"})

    with pytest.raises(DuplicateIdentity):
        second.set({"id": 1, "name": "Changed"})

    assert second.id == 2
    assert second.get("name") == "Rex"
    assert zoo.Pet.find(1) is first
    assert zoo.Pet.find(2) is second


def test_resolve_id_for_item(zoo):
    pet = zoo.Pet({"id": 3})

    assert store.resolve_id_for_item(zoo.Pet, 3) == 3
    assert store.resolve_id_for_item(zoo.Pet, "abc") == "abc"
    assert store.resolve_id_for_item(zoo.Pet, 0) == 0
    assert store.resolve_id_for_item(zoo.Pet, {"id": 4}) == 4
    assert store.resolve_id_for_item(zoo.Pet, pet) == 3
    assert store.resolve_id_for_item(zoo.Pet, None) is None
    assert store.resolve_id_for_item(zoo.Pet, "") is None
    assert store.resolve_id_for_item(zoo.Pet, True) is None


def test_custom_id_attribute():
    class Book(RelationalModel):
        id_attribute = "isbn"

    book = Book({"isbn": "978-0", "title": "Dune"})

    assert book.id == "978-0"
    assert Book.find("978-0") is book
    assert Book.find({"isbn": "978-0"}) is book
    with pytest.raises(DuplicateIdentity):
        Book({"isbn": "978-0"})


@pytest.mark.parametrize("clear", [lambda model: model.set("id", None), lambda model: model.unset("id")])
def test_clearing_an_id_frees_it(zoo, clear):
    first = zoo.Person({"id": 1, "name": "Ann"})

    clear(first)

    assert first.id is None
    assert zoo.Person.find(1) is None
    second = zoo.Person({"id": 1})
    assert zoo.Person.find(1) is second

    # the cleared instance can take a new id later
    first.set("id", 2)
    assert zoo.Person.find(2) is first


def test_replacing_an_id_frees_the_old_one(zoo):
    pet = zoo.Pet({"id": 1})
    person = zoo.Person({"id": 5, "pets": [pet]})

    pet.set("id", 3)

    assert zoo.Pet.find(1) is None
    assert zoo.Pet.find(3) is pet
    assert person.get("pets").get(3) is pet
    assert person.get("pets").get(1) is None
    assert zoo.Pet({"id": 1}) is not pet


def test_rejected_construction_leaves_no_listeners(zoo):
    zoo.Person({"id": 1})
    registered = len(store.get_collection(zoo.Person))

    for _ in range(10):
        with pytest.raises(DuplicateIdentity):
            zoo.Person({"id": 1})

    assert not store._listening_to
    assert len(store.get_collection(zoo.Person)) == registered


def test_reset_strips_synthesised_reverse_relations(warnings_log):
    class Leash(RelationalModel):
        pass

    class Walker(RelationalModel):
        relations = [
            {
                "type": HasMany,
                "key": "leashes",
                "related_model": Leash,
                "reverse_relation": {"key": "walker"},
            }
        ]

    assert [rel.key for rel in Leash.relations] == ["walker"]

    store.reset()
    assert Leash.relations == []

    walker = Walker({"id": 1})
    leash = Leash({"id": 1, "walker": 1})

    assert [rel.key for rel in Leash.relations] == ["walker"]
    assert leash.get("walker") is walker
    assert walker.get("leashes").models == [leash]
    assert warnings_log == []


def test_unregister_and_destroy_forget_instances(zoo):
    pet = zoo.Pet({"id": 1})
    other = zoo.Pet({"id": 2})

    store.unregister(pet)
    assert zoo.Pet.find(1) is None
    # the id is free again
    zoo.Pet({"id": 1})

    other.destroy()
    assert zoo.Pet.find(2) is None


def test_unregister_type_and_reset(zoo):
    zoo.Pet({"id": 1})
    zoo.Pet({"id": 2})
    zoo.Person({"id": 9})

    store.unregister(zoo.Pet)
    assert zoo.Pet.find(1) is None
    assert zoo.Person.find(9) is not None

    store.reset()
    assert zoo.Person.find(9) is None
    assert store.get_object_by_name("Pet") is None


# ──────────────────────────────────────────────────────────────────────
# Names & scopes
# ──────────────────────────────────────────────────────────────────────


def test_get_object_by_name_sources():
    class Shelf(RelationalModel):
        pass

    class Shelves(Collection):
        pass

    assert store.get_object_by_name("Shelf") is Shelf
    assert store.get_object_by_name("Shelves") is Shelves
    assert store.get_object_by_name(f"{Shelf.__module__}:{Shelf.__qualname__}") is Shelf
    assert store.get_object_by_name("Nope") is None

    scope = SimpleNamespace(library=SimpleNamespace(Cabinet=Shelf))
    store.add_model_scope(scope)
    assert store.get_object_by_name("library.Cabinet") is Shelf
    store.remove_model_scope(scope)
    assert store.get_object_by_name("library.Cabinet") is None

    store.add_model_scope({"Drawer": Shelves})
    assert store.get_object_by_name("Drawer") is Shelves


def test_tag_resolution_through_import():
    assert store.get_object_by_name("pydrel.collection:Collection") is Collection


def test_custom_relation_type_registry():
    class LoggedHasOne(HasOne):
        pass

    relation_type_store.register_type("LoggedHasOne", LoggedHasOne)
    try:

        class Owner(RelationalModel):
            pass

        class Car(RelationalModel):
            relations = [{"type": "LoggedHasOne", "key": "owner", "related_model": Owner}]

        owner = Owner({"id": 1})
        car = Car({"id": 1, "owner": 1})

        assert isinstance(car.get_relation("owner"), LoggedHasOne)
        assert car.get("owner") is owner
    finally:
        relation_type_store.unregister_type("LoggedHasOne")

    assert relation_type_store.find("LoggedHasOne") is None


def test_unknown_relation_type_is_skipped():
    class Thing(RelationalModel):
        relations = [{"type": "HasSome", "key": "things", "related_model": "Thing"}]

    thing = Thing({"id": 1, "things": [1]})
    assert thing.get_relation("things") is None
    assert thing.get("things") == [1]


# ──────────────────────────────────────────────────────────────────────
# Sub-models
# ──────────────────────────────────────────────────────────────────────


def make_animals():
    class Animal(RelationalModel):
        sub_model_types = {"mammal": "Mammal", "bird": "Bird"}

    class Mammal(Animal):
        sub_model_types = {"dog": "Dog"}

    class Bird(Animal):
        pass

    class Dog(Mammal):
        pass

    return SimpleNamespace(Animal=Animal, Mammal=Mammal, Bird=Bird, Dog=Dog)


def test_build_picks_most_specific_sub_model():
    zoo = make_animals()

    assert type(zoo.Animal.build({"id": 1, "type": "bird"})) is zoo.Bird
    assert type(zoo.Animal.build({"id": 2, "type": "dog"})) is zoo.Dog
    assert type(zoo.Animal.build({"id": 3, "type": "fish"})) is zoo.Animal
    assert type(zoo.Mammal.build({"id": 4})) is zoo.Mammal
    assert type(zoo.Animal.find_or_create({"id": 5, "type": "mammal"})) is zoo.Mammal


def test_sub_models_share_one_identity_map():
    zoo = make_animals()
    dog = zoo.Animal.build({"id": 1, "type": "dog"})

    assert zoo.Animal.find(1) is dog
    assert zoo.Mammal.find(1) is dog
    assert zoo.Dog.find(1) is dog
    assert zoo.Bird.find(1) is None
    assert store.get_collection(zoo.Dog) is store.get_collection(zoo.Animal)

    with pytest.raises(DuplicateIdentity):
        zoo.Bird({"id": 1})


def test_sub_model_links():
    zoo = make_animals()

    assert zoo.Dog._super_model is zoo.Mammal
    assert zoo.Mammal._super_model is zoo.Animal
    assert zoo.Animal._super_model is False
    assert zoo.Animal._sub_models == {"mammal": zoo.Mammal, "bird": zoo.Bird}
    assert zoo.Dog.sub_model_types is None
    assert zoo.Dog({"id": 9}).to_json() == {"id": 9, "type": "dog"}


# ──────────────────────────────────────────────────────────────────────
# Warnings
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture()
def warnings_log():
    from loguru import logger

    messages = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    yield messages
    logger.remove(handler_id)


def test_misconfigured_relation_is_reported(warnings_log, monkeypatch):
    class Gadget(RelationalModel):
        relations = [{"type": "HasOne", "key": "part", "related_model": dict}]

    Gadget({"id": 1})
    assert any("does not inherit from RelationalModel" in str(message) for message in warnings_log)

    warnings_log.clear()
    monkeypatch.setattr(settings, "SHOW_WARNINGS", False)
    Gadget({"id": 2})
    assert warnings_log == []
