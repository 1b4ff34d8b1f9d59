"""
pydrel.relation
===============
Bidirectional relations between :class:`~pydrel.base_class.RelationalModel`
instances.

* :class:`RelationSpec` – a validated relation declaration, as listed in a
  model class's ``relations``.
* :class:`HasOne` – the value is at most one related instance.
* :class:`HasMany` – the value is a :class:`~pydrel.collection.Collection`
  of related instances.

Every relation has exactly one reverse relation on the related type. When
only one side is declared, the other is synthesised and registered with
the store (``is_auto_relation``). Both sides are kept in step: changing
one notifies the reverse relations of the old and new related instances,
and externally visible ``change:<key>`` / ``add:<key>`` / ``remove:<key>``
/ ``reset:<key>`` events are pushed onto :data:`pydrel.queues.event_queue`
so they fire only once the whole graph has settled.
"""

from collections.abc import Mapping
from functools import partial
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from .collection import Collection
from .events import Events
from .queues import Semaphore, event_queue
from .store import relation_type_store, store, warn

if TYPE_CHECKING:  # pragma: no cover
    from .base_class import RelationalModel

# Option key carrying the previous related value from add_related/remove_related
# into on_change; its presence means the change did not come from a `set` call.
RELATED_OPTION = "__related"

_UNSET: Any = object()


class InvalidConfiguration(TypeError):
    """A relation declaration cannot be turned into a working relation."""


class RelationSpec(BaseModel):
    """
    Declaration of one relation on a model class.

    ``type`` and ``related_model`` accept classes or names (resolved
    through the store); ``related_model`` also accepts a zero-argument
    callable. ``reverse_relation`` is a partial declaration of the mirror
    relation, of which at least ``key`` must be given for the reverse side
    to be created.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    type: Any = None
    key: Optional[str] = None
    key_source: Optional[str] = None
    key_destination: Optional[str] = None
    related_model: Any = None
    model: Any = None
    reverse_relation: Optional["RelationSpec"] = None
    collection_type: Any = None
    collection_key: Union[bool, str] = True
    collection_options: Any = None
    create_models: bool = True
    include_in_json: Union[bool, str, List[str]] = True
    parse: bool = False
    is_auto_relation: bool = False

    @classmethod
    def coerce(cls, value: Union["RelationSpec", Mapping]) -> "RelationSpec":
        if isinstance(value, RelationSpec):
            return value
        return cls.model_validate(dict(value))


def _model_base() -> type:
    from .base_class import RelationalModel

    return RelationalModel


def _is_model_type(value: Any) -> bool:
    return isinstance(value, type) and issubclass(value, _model_base())


def has_content(value: Any) -> bool:
    """``0`` is a usable id; ``None``, ``False`` and ``""`` are not."""
    return value is not None and value is not False and value != ""


# ──────────────────────────────────────────────────────────────────────
# Base relation
# ──────────────────────────────────────────────────────────────────────


class Relation(Events, Semaphore):
    """
    Shared machinery of :class:`HasOne` and :class:`HasMany`.

    Constructed with ``instance=None`` a relation only registers its
    reverse side with the store; that is how class definitions make the
    reverse relation known before any instance exists.
    """

    default_reverse_type: ClassVar[str] = ""

    def __init__(
        self,
        instance: Optional["RelationalModel"],
        options: Union[RelationSpec, Mapping],
        opts: Optional[Dict[str, Any]] = None,
    ) -> None:
        spec = RelationSpec.coerce(options)
        self.instance = instance
        self.options = spec
        self.related: Any = None
        self.related_collection: Optional[Collection] = None
        self.key_contents: Any = None
        self.changed = False

        reverse = spec.reverse_relation.model_copy() if spec.reverse_relation else RelationSpec()
        if reverse.type is None:
            reverse.type = self.default_reverse_type
        reverse.type = store.resolve_relation_type(reverse.type)
        self.reverse_relation = reverse

        self.key = spec.key
        self.key_source = spec.key_source or self.key
        self.key_destination = spec.key_destination or self.key_source or self.key
        self.model = spec.model or (type(instance) if instance is not None else None)

        related_model = spec.related_model if spec.related_model is not None else self.model
        if callable(related_model) and not isinstance(related_model, type):
            related_model = related_model()
        if isinstance(related_model, str):
            related_model = store.get_object_by_name(related_model)
        self.related_model = related_model

        if not self.check_preconditions():
            return

        if not spec.is_auto_relation and reverse.type and reverse.key:
            store.add_reverse_relation(
                reverse.model_copy(
                    update={
                        "is_auto_relation": True,
                        "model": self.related_model,
                        "related_model": self.model,
                        "reverse_relation": spec,
                    }
                )
            )

        if instance is not None:
            content_key = self.key_source
            if content_key != self.key and isinstance(
                instance.get(self.key), (Mapping, list, tuple, Events)
            ):
                content_key = self.key
            self.set_key_contents(instance.get(content_key))
            self.related_collection = store.get_collection(self.related_model)

            if self.key_source != self.key:
                instance.attributes.pop(self.key_source, None)

            instance._relations[self.key] = self
            self.initialize(dict(opts or {}))

            self.listen_to(instance, "destroy", self.destroy)
            self.listen_to(
                self.related_collection,
                "relational:add relational:change:id",
                self.try_add_related,
            )
            self.listen_to(self.related_collection, "relational:remove", self.remove_related)

    def __repr__(self) -> str:
        model_name = getattr(self.model, "__name__", self.model)
        return f"<{type(self).__name__} {model_name}.{self.key}>"

    def check_preconditions(self) -> bool:
        if not self.model or not self.key or not self.related_model:
            warn(
                "Relation={}: missing model, key or related_model ({}, {}, {})",
                self,
                self.model,
                self.key,
                self.related_model,
            )
            return False
        if not _is_model_type(self.model):
            warn("Relation={}: model does not inherit from RelationalModel ({})", self, self.model)
            return False
        if not _is_model_type(self.related_model):
            warn(
                "Relation={}: related_model does not inherit from RelationalModel ({})",
                self,
                self.related_model,
            )
            return False
        if isinstance(self, HasMany) and self.reverse_relation.type is HasMany:
            warn("Relation={}: relation is a HasMany, and its reverse relation is HasMany as well", self)
            return False
        if self.instance is not None and self.key in self.instance._relations:
            warn("Relation={}: cannot create relation on existing key '{}'", self, self.key)
            return False
        return True

    def initialize(self, options: Dict[str, Any]) -> None:
        raise NotImplementedError

    def set_key_contents(self, key_contents: Any) -> None:
        raise NotImplementedError

    def set_related(self, related: Any) -> None:
        self.related = related
        self.instance.attributes[self.key] = related

    def _is_reverse_relation(self, relation: "Relation") -> bool:
        return (
            isinstance(relation.instance, self.related_model)
            and self.reverse_relation.key == relation.key
            and self.key == relation.reverse_relation.key
        )

    def get_reverse_relations(self, model: Any = _UNSET) -> List["Relation"]:
        """
        Return the relations on ``model`` (default: every currently
        related instance) that mirror this one.
        """
        if model is _UNSET:
            if isinstance(self.related, Collection):
                models = list(self.related.models)
            else:
                models = [self.related] if self.related is not None else []
        else:
            models = [model] if model is not None else []

        reverse_relations = []
        for related in models:
            for relation in related.get_relations():
                if self._is_reverse_relation(relation):
                    reverse_relations.append(relation)
        return reverse_relations

    def destroy(self, *args: Any) -> None:
        """Detach from the destroyed owner and from every reverse relation."""
        reverse_relations = self.get_reverse_relations()
        self.stop_listening()
        if isinstance(self, HasOne):
            self.set_related(None)
        elif isinstance(self, HasMany):
            self.set_related(self._prepare_collection())
        for relation in reverse_relations:
            relation.remove_related(self.instance)


# ──────────────────────────────────────────────────────────────────────
# HasOne
# ──────────────────────────────────────────────────────────────────────


class HasOne(Relation):
    default_reverse_type = "HasMany"

    key_id: Any = None

    def initialize(self, options: Dict[str, Any]) -> None:
        self.listen_to(self.instance, f"relational:change:{self.key}", self.on_change)
        self.set_related(self.find_related(options))
        for relation in self.get_reverse_relations():
            relation.add_related(self.instance, options)

    def find_related(self, options: Dict[str, Any]) -> Optional["RelationalModel"]:
        related = None
        options = {**options, "parse": self.options.parse}

        if isinstance(self.key_contents, self.related_model):
            related = self.key_contents
        elif has_content(self.key_contents):
            related = self.related_model.find_or_create(
                self.key_contents, **{**options, "create": self.options.create_models}
            )

        # Already resolved; nothing left to match against late arrivals.
        if related is not None:
            self.key_id = None
        return related

    def set_key_contents(self, key_contents: Any) -> None:
        self.key_contents = key_contents
        self.key_id = store.resolve_id_for_item(self.related_model, key_contents)

    def on_change(self, model: Any, attr: Any, options: Optional[Dict[str, Any]] = None) -> None:
        """
        Handle ``relational:change:<key>`` on the owner, or a change pushed
        by :meth:`add_related` / :meth:`remove_related`.
        """
        # on_change -> find_related -> find_or_create -> ... -> add_related -> on_change
        if self.is_locked():
            return
        self.acquire()
        try:
            options = dict(options or {})
            changed = RELATED_OPTION not in options
            old_related = self.related if changed else options.pop(RELATED_OPTION)

            if changed:
                self.set_key_contents(attr)
                self.set_related(self.find_related(options))

            if old_related is not None and self.related is not old_related:
                for relation in self.get_reverse_relations(old_related):
                    relation.remove_related(self.instance, None, options)

            # Re-applied even when unchanged: the reverse side may not know
            # about this instance yet if it was created after `related`.
            for relation in self.get_reverse_relations():
                relation.add_related(self.instance, options)

            if not options.get("silent") and self.related is not old_related:
                self.changed = True
                event_queue.add(partial(self._trigger_change, options))
        finally:
            self.release()

    def _trigger_change(self, options: Dict[str, Any]) -> None:
        self.instance.trigger(
            f"change:{self.key}", self.instance, self.related, options, from_relation=True
        )
        self.changed = False

    def try_add_related(self, model: "RelationalModel", coll: Any = None, options: Any = None) -> None:
        if self.key_id is not None and model.id == self.key_id:
            self.add_related(model, options)
            self.key_id = None

    def add_related(self, model: "RelationalModel", options: Optional[Dict[str, Any]] = None) -> None:
        options = dict(options or {})

        def apply() -> None:
            if model is not self.related:
                old_related = self.related
                self.set_related(model)
                self.on_change(self.instance, model, {**options, RELATED_OPTION: old_related})

        # Runs once `model` has finished setting up its own relations.
        model.queue(apply)

    def remove_related(
        self,
        model: "RelationalModel",
        coll: Any = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.related is None:
            return
        if model is self.related:
            old_related = self.related
            self.set_related(None)
            self.on_change(self.instance, model, {**(options or {}), RELATED_OPTION: old_related})


# ──────────────────────────────────────────────────────────────────────
# HasMany
# ──────────────────────────────────────────────────────────────────────


class HasMany(Relation):
    default_reverse_type = "HasOne"

    collection_type: Optional[type] = None
    key_ids: List[Any]

    def initialize(self, options: Dict[str, Any]) -> None:
        self.listen_to(self.instance, f"relational:change:{self.key}", self.on_change)

        collection_type = self.options.collection_type or Collection
        if callable(collection_type) and not isinstance(collection_type, type):
            collection_type = collection_type()
        if isinstance(collection_type, str):
            collection_type = store.get_object_by_name(collection_type)
        if not (isinstance(collection_type, type) and issubclass(collection_type, Collection)):
            raise InvalidConfiguration(
                f"collection_type of {self!r} must be Collection or a subclass of it, "
                f"got {collection_type!r}"
            )
        self.collection_type = collection_type

        self.set_related(self.find_related(options))

    def _prepare_collection(self, collection: Optional[Collection] = None) -> Collection:
        """
        Wire up ``collection`` (or a new ``collection_type`` instance) as the
        backing store of this relation.
        """
        if self.related is not None:
            self.stop_listening(self.related)

        if not isinstance(collection, Collection):
            collection_options = self.options.collection_options
            if callable(collection_options):
                collection_options = collection_options(self.instance)
            collection = self.collection_type(None, **(collection_options or {}))

        collection.model = self.related_model

        collection_key = self.options.collection_key
        if collection_key:
            key = self.reverse_relation.key if collection_key is True else collection_key
            existing = getattr(collection, key, None) if key else None
            if existing is not None and existing is not self.instance:
                warn(
                    "Relation={}; collection_key={} already exists on collection={}",
                    self,
                    key,
                    collection,
                )
            elif key:
                setattr(collection, key, self.instance)

        self.listen_to(collection, "relational:add", self.handle_addition)
        self.listen_to(collection, "relational:remove", self.handle_removal)
        self.listen_to(collection, "relational:reset", self.handle_reset)
        return collection

    def find_related(self, options: Dict[str, Any]) -> Collection:
        options = {**options, "parse": self.options.parse}

        if isinstance(self.key_contents, Collection):
            self._prepare_collection(self.key_contents)
            related = self.key_contents
        else:
            to_add = []
            for attributes in self.key_contents or []:
                if isinstance(attributes, self.related_model):
                    model = attributes
                elif isinstance(attributes, Mapping) and options["parse"]:
                    model = self.related_model.parse(dict(attributes), options)
                else:
                    model = attributes
                if has_content(model):
                    to_add.append(model)

            if isinstance(self.related, Collection):
                related = self.related
            else:
                related = self._prepare_collection()

            # parse already ran above
            related.set(to_add, **{**options, "parse": False, "create": self.options.create_models})

        present = [model.id for model in related.models]
        self.key_ids = [item_id for item_id in self.key_ids if item_id not in present]
        return related

    def set_key_contents(self, key_contents: Any) -> None:
        self.key_contents = key_contents if isinstance(key_contents, Collection) else None
        self.key_ids = []

        if self.key_contents is None and has_content(key_contents):
            # a single id or mapping is accepted in place of a list
            if isinstance(key_contents, (list, tuple)):
                self.key_contents = list(key_contents)
            else:
                self.key_contents = [key_contents]

            for item in self.key_contents:
                item_id = store.resolve_id_for_item(self.related_model, item)
                if item_id is not None:
                    self.key_ids.append(item_id)

    def on_change(self, model: Any, attr: Any, options: Optional[Dict[str, Any]] = None) -> None:
        options = dict(options or {})
        self.set_key_contents(attr)
        self.changed = False

        self.set_related(self.find_related(options))

        if not options.get("silent"):
            event_queue.add(partial(self._trigger_change, options))

    def _trigger_change(self, options: Dict[str, Any]) -> None:
        # `changed` is raised by handle_addition / handle_removal
        if self.changed:
            self.instance.trigger(
                f"change:{self.key}", self.instance, self.related, options, from_relation=True
            )
            self.changed = False

    def handle_addition(self, model: "RelationalModel", coll: Any = None, options: Any = None) -> None:
        options = dict(options or {})
        self.changed = True

        for relation in self.get_reverse_relations(model):
            relation.add_related(self.instance, options)

        if not options.get("silent"):
            event_queue.add(
                lambda: self.instance.trigger(f"add:{self.key}", model, self.related, options)
            )

    def handle_removal(self, model: "RelationalModel", coll: Any = None, options: Any = None) -> None:
        options = dict(options or {})
        self.changed = True

        for relation in self.get_reverse_relations(model):
            relation.remove_related(self.instance, None, options)

        if not options.get("silent"):
            event_queue.add(
                lambda: self.instance.trigger(f"remove:{self.key}", model, self.related, options)
            )

    def handle_reset(self, coll: Any = None, options: Any = None) -> None:
        options = dict(options or {})
        if not options.get("silent"):
            event_queue.add(lambda: self.instance.trigger(f"reset:{self.key}", self.related, options))

    def try_add_related(self, model: "RelationalModel", coll: Any = None, options: Any = None) -> None:
        if model.id is not None and model.id in self.key_ids:
            self.add_related(model, options)
            self.key_ids = [item_id for item_id in self.key_ids if item_id != model.id]

    def add_related(self, model: "RelationalModel", options: Optional[Dict[str, Any]] = None) -> None:
        options = dict(options or {})

        def apply() -> None:
            if self.related is not None and self.related.get(model) is None:
                self.related.add(model, **{**options, "parse": False})

        model.queue(apply)

    def remove_related(
        self,
        model: "RelationalModel",
        coll: Any = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.related is not None and self.related.get(model) is not None:
            self.related.remove(model, **(options or {}))


relation_type_store.register_type("HasOne", HasOne)
relation_type_store.register_type("HasMany", HasMany)
