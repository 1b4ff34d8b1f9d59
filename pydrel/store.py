"""
pydrel.store
============
The process-wide identity map and type registry behind the relation
engine.

* **Identity** – at most one live instance per ``(root type, id)``. Each
  root model type (the top of a sub-model hierarchy) gets one
  :class:`~pydrel.collection.Collection` that indexes its instances.
* **Late arrival** – relations listen to those collections, so an
  instance registered later is spliced into any relation still waiting
  for its id.
* **Orphans** – reverse relations naming a related type that does not
  exist yet are queued and initialised as soon as the type is defined.
* **Names** – model and collection types can be referenced by name, by a
  ``"<module>:<QualName>"`` tag, or through explicit model scopes.

The store is explicit global state; :meth:`Store.reset` tears it down
(tests call it around every case).
"""

from collections.abc import Mapping
from importlib import import_module
from types import ModuleType
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Type, Union

from loguru import logger

from . import settings
from .collection import Collection
from .events import Events

if TYPE_CHECKING:  # pragma: no cover
    from .base_class import RelationalModel
    from .relation import Relation, RelationSpec


class DuplicateIdentity(ValueError):
    """Raised when an id would map to a second live instance of a type."""


def warn(message: str, *args: Any) -> None:
    """Report a configuration problem if ``settings.SHOW_WARNINGS`` is on."""
    if settings.SHOW_WARNINGS:
        logger.warning(message, *args)


def _model_base() -> type:
    from .base_class import RelationalModel

    return RelationalModel


def _all_subclasses(cls: type) -> list[type]:
    """Recursively collect *all* subclasses of ``cls``."""
    subs: list[type] = []
    for sub in cls.__subclasses__():
        subs.append(sub)
        subs.extend(_all_subclasses(sub))
    return subs


def _resolve_object_from_tag(fq_tag: str) -> Optional[type]:
    """
    Resolve a ``"<module.path>:<QualName>"`` tag into a class.

    The attribute walk handles module-level and nested classes; classes
    defined inside functions (``<locals>`` in their qualname) are found by
    scanning the known subclasses instead.
    """
    mod_path, qualname = fq_tag.split(":", 1)
    try:
        obj: Any = import_module(mod_path)
        for attr in qualname.split("."):
            obj = getattr(obj, attr)
        if isinstance(obj, type):
            return obj
    except (ImportError, AttributeError):
        pass

    for base in (_model_base(), Collection):
        for sub in _all_subclasses(base):
            if sub.__qualname__ == qualname and sub.__module__ == mod_path:
                logger.debug("Fallback resolved tag '{}' → {}", fq_tag, sub)
                return sub
    return None


# ──────────────────────────────────────────────────────────────────────
# Relation type registry
# ──────────────────────────────────────────────────────────────────────


class RelationTypeStore:
    """Maps relation type names (``"HasOne"``, ``"HasMany"``, ...) to classes."""

    def __init__(self) -> None:
        self._types: Dict[str, Type["Relation"]] = {}

    def register_type(self, name: str, relation_type: Type["Relation"]) -> None:
        self._types[name] = relation_type

    def unregister_type(self, name: str) -> None:
        self._types.pop(name, None)

    def find(self, name: str) -> Optional[Type["Relation"]]:
        return self._types.get(name)


relation_type_store = RelationTypeStore()


# ──────────────────────────────────────────────────────────────────────
# Identity store
# ──────────────────────────────────────────────────────────────────────


class Store(Events):
    """
    Global identity map for :class:`~pydrel.base_class.RelationalModel`
    instances.

    Instances are registered as soon as they have an id (at construction
    or on a later id assignment) and stay registered until they are
    destroyed or explicitly unregistered.
    """

    def __init__(self) -> None:
        self._collections: List[Collection] = []
        self._reverse_relations: List["RelationSpec"] = []
        self._orphan_relations: List["RelationSpec"] = []
        self._sub_models: List[Tuple[type, Dict[Any, Any]]] = []
        self._model_scopes: List[Union[ModuleType, Mapping]] = []
        self._types: Dict[str, type] = {}

    # ── names & scopes ────────────────────────────────────────────────

    def register_type(self, cls: type) -> None:
        """Make ``cls`` resolvable by name; later definitions win."""
        self._types[cls.__name__] = cls
        self._types[cls.__qualname__] = cls
        self._types[f"{cls.__module__}:{cls.__qualname__}"] = cls

    def add_model_scope(self, scope: Union[ModuleType, Mapping]) -> None:
        self._model_scopes.append(scope)

    def remove_model_scope(self, scope: Union[ModuleType, Mapping]) -> None:
        self._model_scopes = [s for s in self._model_scopes if s is not scope]

    def get_object_by_name(self, name: str) -> Optional[type]:
        """
        Resolve ``name`` to a model or collection type.

        Lookup order: names registered by class definition (including
        ``"<module>:<QualName>"`` tags), explicit model scopes (dotted
        paths allowed), and finally tag resolution through imports.
        """
        if name in self._types:
            return self._types[name]

        for scope in reversed(self._model_scopes):
            obj: Any = scope
            for part in name.split("."):
                obj = obj.get(part) if isinstance(obj, Mapping) else getattr(obj, part, None)
                if obj is None:
                    break
            if isinstance(obj, type):
                return obj

        if ":" in name:
            return _resolve_object_from_tag(name)
        return None

    def resolve_relation_type(self, relation_type: Any) -> Any:
        if isinstance(relation_type, str):
            return relation_type_store.find(relation_type) or self.get_object_by_name(relation_type)
        return relation_type

    # ── relation bookkeeping ──────────────────────────────────────────

    def initialize_relation(
        self,
        model: Optional["RelationalModel"],
        relation: "RelationSpec",
        options: Optional[Dict[str, Any]] = None,
    ) -> Optional["Relation"]:
        """
        Instantiate the relation class named by ``relation.type`` for
        ``model``. With ``model=None`` the relation only registers its
        reverse side for future instances.
        """
        from .relation import Relation

        relation_type = self.resolve_relation_type(relation.type)
        if isinstance(relation_type, type) and issubclass(relation_type, Relation):
            return relation_type(model, relation, options)
        warn("Relation={}; missing or invalid relation type {!r}", relation.key, relation.type)
        return None

    def add_sub_models(self, sub_model_types: Dict[Any, Any], super_model_type: type) -> None:
        """Remember that ``super_model_type`` dispatches to ``sub_model_types``."""
        self._sub_models.append((super_model_type, dict(sub_model_types)))

    def setup_super_model(self, model_type: type) -> bool:
        """
        Link ``model_type`` to the parent that lists it as a sub-model.

        Returns ``True`` when a parent was found.
        """
        for super_model_type, sub_models in self._sub_models:
            for type_value, sub_model in sub_models.items():
                sub_model_type = (
                    sub_model if isinstance(sub_model, type) else self.get_object_by_name(sub_model)
                )
                if sub_model_type is model_type:
                    super_model_type._sub_models[type_value] = model_type
                    model_type._super_model = super_model_type
                    model_type._sub_model_type_value = type_value
                    model_type._sub_model_type_attribute = super_model_type.sub_model_type_attribute
                    logger.debug(
                        "Linked sub-model {} to {} ({}={!r})",
                        model_type.__name__,
                        super_model_type.__name__,
                        super_model_type.sub_model_type_attribute,
                        type_value,
                    )
                    return True
        return False

    @staticmethod
    def _same_relation(a: "RelationSpec", b: "RelationSpec") -> bool:
        return (
            a.model is b.model
            and a.related_model is b.related_model
            and a.key == b.key
            and a.type == b.type
            and a.reverse_relation is b.reverse_relation
        )

    def add_reverse_relation(self, relation: "RelationSpec") -> None:
        """
        Register an auto-synthesised reverse relation on ``relation.model``
        (and its sub-models) and retro-fit it onto existing instances.
        """
        exists = any(self._same_relation(relation, rel) for rel in self._reverse_relations)
        if not exists and relation.model and relation.type:
            self._reverse_relations.append(relation)
            self._add_relation(relation.model, relation)
            self.retro_fit_relation(relation)

    def add_orphan_relation(self, relation: "RelationSpec") -> None:
        exists = any(rel is relation for rel in self._orphan_relations)
        if not exists and relation.model and relation.type:
            logger.debug(
                "Queueing orphan relation {}.{} → {!r}",
                relation.model.__name__,
                relation.key,
                relation.related_model,
            )
            self._orphan_relations.append(relation)

    def process_orphan_relations(self) -> None:
        """Initialise every queued orphan whose related type now resolves."""
        for relation in list(self._orphan_relations):
            related_model = self.get_object_by_name(relation.related_model)
            if related_model is not None:
                logger.debug(
                    "Resolved orphan relation {}.{} → {}",
                    relation.model.__name__,
                    relation.key,
                    related_model.__name__,
                )
                self.initialize_relation(None, relation)
                self._orphan_relations = [rel for rel in self._orphan_relations if rel is not relation]

    def _add_relation(self, model_type: type, relation: "RelationSpec") -> None:
        if not any(rel is relation for rel in model_type.relations):
            model_type.relations.append(relation)
        for sub_model in list(model_type._sub_models.values()):
            self._add_relation(sub_model, relation)

    def retro_fit_relation(self, relation: "RelationSpec") -> None:
        coll = self.get_collection(relation.model, create=False)
        if coll is None:
            return
        relation_type = self.resolve_relation_type(relation.type)
        for model in list(coll.models):
            if isinstance(model, relation.model) and model.get_relation(relation.key) is None:
                relation_type(model, relation)

    # ── identity map ──────────────────────────────────────────────────

    def get_collection(self, type_or_model: Any, create: bool = True) -> Optional[Collection]:
        """
        Return the collection indexing instances of ``type_or_model``'s
        root type, creating it unless ``create`` is ``False``.
        """
        model_type = type_or_model
        if isinstance(type_or_model, _model_base()):
            model_type = type(type_or_model)

        root_model = model_type
        while root_model._super_model:
            root_model = root_model._super_model

        for coll in self._collections:
            if coll.model is root_model:
                return coll
        if create:
            return self._create_collection(root_model)
        return None

    def _create_collection(self, model_type: type) -> Optional[Collection]:
        if isinstance(model_type, type) and issubclass(model_type, _model_base()):
            coll = Collection(model=model_type)
            self._collections.append(coll)
            return coll
        return None

    def resolve_id_for_item(self, model_type: type, item: Any) -> Any:
        """
        Reduce ``item`` (a raw id, an attribute mapping, or an instance) to
        the id used for lookups. Empty values resolve to ``None``.
        """
        if isinstance(item, bool):
            item_id = None
        elif isinstance(item, (str, int, float)):
            item_id = item
        elif isinstance(item, _model_base()):
            item_id = item.id
        elif isinstance(item, Mapping):
            item_id = item.get(model_type.id_attribute)
        else:
            item_id = None

        if item_id is None or item_id == "":
            return None
        return item_id

    def find(self, model_type: type, item: Any) -> Optional["RelationalModel"]:
        """
        Return the registered instance for ``item``'s id if it is an
        instance of ``model_type`` (sub-model instances included).
        """
        item_id = self.resolve_id_for_item(model_type, item)
        if item_id is None:
            return None
        coll = self.get_collection(model_type)
        if coll is not None:
            obj = coll.get(item_id)
            if isinstance(obj, model_type):
                return obj
        return None

    def register(self, model: "RelationalModel") -> None:
        coll = self.get_collection(model)
        if coll is not None:
            model_coll = model.collection
            coll.add(model)
            model.collection = model_coll
            logger.debug("Registered {} id={!r}", type(model).__name__, model.id)

    def check_id(self, model: "RelationalModel", item_id: Any) -> None:
        """
        Raise :class:`DuplicateIdentity` if ``item_id`` already belongs to
        another live instance of ``model``'s root type.
        """
        if item_id is None:
            return
        coll = self.get_collection(model)
        duplicate = coll.get(item_id) if coll is not None else None
        if duplicate is not None and duplicate is not model:
            warn("Duplicate id! Old RelationalModel={}, new RelationalModel={}", duplicate, model)
            raise DuplicateIdentity(
                f"Cannot instantiate more than one {type(model).__name__} with the same "
                f"id ({item_id!r}) per type"
            )

    def update(self, model: "RelationalModel") -> None:
        """Re-index ``model`` after its id changed."""
        coll = self.get_collection(model)
        if self.resolve_id_for_item(type(model), model) is not None and not coll.contains(model):
            self.register(model)
        coll._reindex(model)
        model.trigger("relational:change:id", model, coll)

    def unregister(self, target: Any, *args: Any) -> None:
        """
        Remove an instance, every instance of a collection, or every
        instance of a type from the store.
        """
        if isinstance(target, _model_base()):
            coll = self.get_collection(target)
            models = [target]
        elif isinstance(target, Collection):
            coll = self.get_collection(target.model)
            models = list(target.models)
        else:
            coll = self.get_collection(target)
            models = list(coll.models) if coll is not None else []

        for model in models:
            for rel in model.get_relations():
                rel.stop_listening()

        if coll is None:
            return
        if any(c is target for c in self._collections):
            coll.reset([])
        else:
            for model in models:
                if coll.get(model) is model:
                    coll.remove(model)

    def reset(self) -> None:
        """
        Forget every registered instance, sub-model definition, pending
        orphan / reverse relation, model scope and type name.

        Synthesised reverse relations are stripped from the classes they
        were added to. Classes that stay in use must refer to each other by
        class (or scope) rather than by name, since names are forgotten too.

        Intended mainly for tests that need a clean identity map.
        """
        # detach every relation first so teardown does not cascade through reverse relations
        for coll in self._collections:
            for model in coll.models:
                for rel in model.get_relations():
                    rel.stop_listening()
        for coll in list(self._collections):
            self.unregister(coll)
        # synthesised reverse relations are added again by the next instance
        for relation in self._reverse_relations:
            model_type = relation.model
            if not isinstance(model_type, type):
                continue
            for cls in [model_type, *_all_subclasses(model_type)]:
                if any(rel is relation for rel in cls.relations):
                    cls.relations = [rel for rel in cls.relations if rel is not relation]
        self._collections = []
        self._reverse_relations = []
        self._orphan_relations = []
        self._sub_models = []
        self._model_scopes = []
        self._types = {}


store = Store()
