"""
pydrel.base_class
=================
:class:`RelationalModel`, the attribute host the relation engine is built
around.

A model keeps its data in a plain ``attributes`` mapping and reports
changes through events (``change``, ``change:<attr>``, ``destroy``). On
top of that it

* declares relations in a class-level ``relations`` list
  (see :class:`~pydrel.relation.RelationSpec`) that are set up exactly
  once per instance, during the first ``set``,
* registers itself in the global :data:`~pydrel.store.store` as soon as
  it has an id, refusing ids that already belong to a live instance,
* re-dispatches ``change`` events through
  :data:`~pydrel.queues.event_queue` while a mutation is in progress, so
  observers see the settled graph, with a relation's own
  ``change:<key>`` taking precedence over the raw attribute write and the
  outer ``change`` firing at most once,
* supports polymorphic construction through ``sub_model_types``.

Example::

    class Person(RelationalModel):
        relations = [
            {
                "type": "HasMany",
                "key": "pets",
                "related_model": "Pet",
                "reverse_relation": {"key": "owner"},
            }
        ]

    class Pet(RelationalModel):
        pass

    person = Person({"id": 5, "pets": [{"id": 1}]})
    assert Pet.find(1).get("owner") is person
"""

import asyncio
import itertools
from collections.abc import Mapping
from functools import partial
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union
from urllib.parse import quote

from loguru import logger

from . import settings
from .collection import Collection
from .events import Events
from .fetch import FetchError, Fetcher, resolve_fetcher
from .queues import BlockingQueue, Semaphore, event_queue
from .relation import HasMany, Relation, RelationSpec
from .store import store

_UNSET: Any = object()

_cid_counter = itertools.count(1)


class RelationalModel(Events, Semaphore):
    """
    Base class for models taking part in relations.

    Class attributes
    ----------------
    id_attribute:
        Attribute holding the identity used by the store.
    relations:
        Relation declarations, as :class:`RelationSpec` or plain dicts.
    sub_model_types:
        Maps values of ``sub_model_type_attribute`` to sub-model classes
        (or their names); :meth:`build` uses it to pick the concrete type.
    defaults:
        Mapping, or method returning one, of attribute defaults.
    url_root / fetcher:
        Remote location and :class:`~pydrel.fetch.Fetcher` used by
        :meth:`fetch` and :meth:`get_async`.
    """

    id_attribute: ClassVar[str] = settings.DEFAULT_ID_ATTRIBUTE
    relations: ClassVar[List[Any]] = []
    sub_model_type_attribute: ClassVar[str] = settings.DEFAULT_SUB_MODEL_TYPE_ATTRIBUTE
    sub_model_types: ClassVar[Optional[Dict[Any, Any]]] = None
    defaults: ClassVar[Union[None, Dict[str, Any], Callable[..., Dict[str, Any]]]] = None
    url_root: ClassVar[Optional[str]] = None
    fetcher: ClassVar[Optional[Fetcher]] = None

    _sub_models: ClassVar[Dict[Any, type]] = {}
    # None: not looked up yet; False: no super model
    _super_model: ClassVar[Any] = None
    _sub_model_type_value: ClassVar[Any] = None
    _sub_model_type_attribute: ClassVar[Optional[str]] = None

    # ──────────────────────────────────────────────────────────────────
    # Class setup
    # ──────────────────────────────────────────────────────────────────

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.setup()

    @classmethod
    def setup(cls) -> None:
        """
        Prepare a newly defined model class.

        The ``relations`` list is copied (reverse relations get appended to
        it later, and must not leak into a parent class), declarations are
        validated, reverse relations are registered now or queued as
        orphans when their related type is not defined yet.
        """
        cls.relations = [RelationSpec.coerce(rel) for rel in (cls.relations or [])]
        cls._sub_models = {}
        cls._super_model = None
        cls._sub_model_type_value = None
        cls._sub_model_type_attribute = None

        store.register_type(cls)

        if "sub_model_types" in cls.__dict__ and cls.sub_model_types:
            store.add_sub_models(cls.sub_model_types, cls)
        else:
            # not inherited
            cls.sub_model_types = None

        for rel in list(cls.relations):
            if rel.model is None:
                rel.model = cls
            if rel.reverse_relation is None or rel.model is not cls:
                continue

            pre_initialize = True
            if isinstance(rel.related_model, str):
                related_model = store.get_object_by_name(rel.related_model)
                pre_initialize = isinstance(related_model, type) and issubclass(
                    related_model, RelationalModel
                )

            if pre_initialize:
                store.initialize_relation(None, rel)
            elif isinstance(rel.related_model, str):
                store.add_orphan_relation(rel)

        cls.initialize_model_hierarchy()
        store.process_orphan_relations()

    @classmethod
    def initialize_model_hierarchy(cls) -> None:
        cls.inherit_relations()

        if cls.sub_model_types:
            for type_value, sub_model in cls.sub_model_types.items():
                if type_value in cls._sub_models:
                    continue
                sub_model_type = (
                    sub_model if isinstance(sub_model, type) else store.get_object_by_name(sub_model)
                )
                if sub_model_type is not None and issubclass(sub_model_type, RelationalModel):
                    if sub_model_type._super_model is False:
                        sub_model_type._super_model = None
                    sub_model_type.initialize_model_hierarchy()

    @classmethod
    def inherit_relations(cls) -> None:
        if cls._super_model is not None:
            return
        store.setup_super_model(cls)

        if cls._super_model:
            super_model = cls._super_model
            super_model.inherit_relations()
            inherited = [
                super_rel
                for super_rel in super_model.relations
                if not any(
                    super_rel.related_model is rel.related_model and super_rel.key == rel.key
                    for rel in cls.relations
                )
            ]
            cls.relations = inherited + cls.relations
        else:
            cls._super_model = False

    @staticmethod
    def _find_sub_model_type(model_type: type, attributes: Mapping) -> Optional[type]:
        """
        Depth-first search of the sub-model tree below ``model_type`` for
        the type selected by ``attributes``' discriminator value.
        """
        if model_type._sub_models and model_type.sub_model_type_attribute in attributes:
            type_value = attributes[model_type.sub_model_type_attribute]
            sub_model_type = model_type._sub_models.get(type_value)
            if sub_model_type is not None:
                return sub_model_type
            for sub_model in model_type._sub_models.values():
                sub_model_type = RelationalModel._find_sub_model_type(sub_model, attributes)
                if sub_model_type is not None:
                    return sub_model_type
        return None

    # ──────────────────────────────────────────────────────────────────
    # Lookup & construction
    # ──────────────────────────────────────────────────────────────────

    @classmethod
    def build(cls, attributes: Optional[Mapping] = None, **options: Any) -> "RelationalModel":
        """Instantiate the most specific sub-model type for ``attributes``."""
        cls.initialize_model_hierarchy()
        model_type = cls._find_sub_model_type(cls, attributes or {}) or cls
        logger.debug("Building {} for {}", model_type.__name__, cls.__name__)
        return model_type(attributes, **options)

    @classmethod
    def find_model(cls, attributes: Any) -> Optional["RelationalModel"]:
        """Match ``attributes`` (or an id) to a live instance; override to customise."""
        return store.find(cls, attributes)

    @classmethod
    def find_or_create(cls, attributes: Any, **options: Any) -> Optional["RelationalModel"]:
        """
        Return the live instance matching ``attributes``, or build one.

        Parameters
        ----------
        attributes:
            An id, or an attribute mapping.
        create:
            Build a new instance when nothing matches and ``attributes`` is
            a mapping (default ``True``).
        merge:
            ``set`` a mapping onto an existing match (default ``True``).
        parse:
            Run :meth:`parse` on a mapping first (default ``False``).
        """
        is_mapping = isinstance(attributes, Mapping)
        parsed = attributes
        if is_mapping and options.get("parse"):
            parsed = cls.parse(dict(attributes), options)

        model = cls.find_model(parsed)

        if is_mapping:
            if model is not None and options.get("merge", True):
                set_options = {k: v for k, v in options.items() if k not in ("collection", "url")}
                model.set(parsed, **set_options)
            elif model is None and options.get("create", True):
                model = cls.build(parsed, **{**options, "parse": False})
        return model

    @classmethod
    def find(cls, attributes: Any, **options: Any) -> Optional["RelationalModel"]:
        """Like :meth:`find_or_create`, but never creates."""
        return cls.find_or_create(attributes, **{**options, "create": False})

    @classmethod
    def parse(cls, data: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        return data

    # ──────────────────────────────────────────────────────────────────
    # Instance lifecycle
    # ──────────────────────────────────────────────────────────────────

    def __init__(self, attributes: Optional[Mapping] = None, **options: Any) -> None:
        collection = options.pop("collection", None)

        self.cid = f"c{next(_cid_counter)}"
        self.attributes: Dict[str, Any] = {}
        self.changed: Dict[str, Any] = {}
        self.collection: Optional[Collection] = collection
        self._previous_attributes: Dict[str, Any] = {}
        self._changing = False
        self._pending: Optional[Dict[str, Any]] = None
        self._relations: Dict[str, Relation] = {}
        self._is_initialized = False
        self._attribute_change_fired = False

        # Built on behalf of a collection: hold back queued relation work
        # until the collection has actually taken the model in.
        self._defer_processing = collection is not None
        self._defer_collection = collection

        store.process_orphan_relations()

        self._queue = BlockingQueue()
        self._queue.block()
        event_queue.block()
        try:
            attrs = dict(attributes or {})
            if options.get("parse"):
                attrs = dict(self.parse(attrs, options) or {})
            defaults = self.defaults() if callable(self.defaults) else self.defaults
            if defaults:
                attrs = {**defaults, **attrs}
            self.set(attrs, **options)
            self.changed = {}
            self.initialize(attrs, **options)
        finally:
            event_queue.unblock()

    def initialize(self, attributes: Dict[str, Any], **options: Any) -> None:
        """Hook run at the end of construction."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id_attribute}={self.id!r} cid={self.cid}>"

    @property
    def id(self) -> Any:
        return self.attributes.get(self.id_attribute)

    def is_new(self) -> bool:
        return not self.has(self.id_attribute)

    def clone(self) -> "RelationalModel":
        """Copy the plain attributes into a new, id-less instance."""
        attributes = dict(self.attributes)
        if self.id_attribute in attributes:
            attributes[self.id_attribute] = None
        for rel in self.get_relations():
            attributes.pop(rel.key, None)
        return type(self)(attributes)

    def destroy(self, **options: Any) -> None:
        """Fire ``destroy``; relations detach and the store forgets the instance."""
        self.trigger("destroy", self, self.collection, options)

    def _stop_deferring(self, collection: Collection) -> None:
        if self._defer_processing and collection is self._defer_collection:
            self._defer_processing = False
            self._defer_collection = None
            self.process_queue()

    # ──────────────────────────────────────────────────────────────────
    # Attributes
    # ──────────────────────────────────────────────────────────────────

    def get(self, attr: str) -> Any:
        return self.attributes.get(attr)

    def has(self, attr: str) -> bool:
        return self.attributes.get(attr) is not None

    def set(self, key: Any, value: Any = _UNSET, **options: Any) -> "RelationalModel":
        """
        ``set("name", value, **options)`` or ``set({"name": value}, **options)``.

        The id is checked against the store before anything is written. The
        first call sets up this instance's relations; later calls that touch
        a relation's key push the new value into that relation.

        Raises
        ------
        DuplicateIdentity
            If the new id already belongs to another live instance.
        """
        if key is None:
            attributes: Dict[str, Any] = {}
        elif isinstance(key, Mapping):
            attributes = dict(key)
        else:
            attributes = {key: value}

        event_queue.block()
        try:
            old_id = self.id
            new_id = attributes.get(self.id_attribute) if not options.get("unset") else None

            store.check_id(self, new_id)

            result = self._set_attributes(attributes, options)

            if not self._is_initialized and not self.is_locked():
                type(self).initialize_model_hierarchy()
                # Only models with an id are registered; the rest register on id assignment.
                if new_id is not None and new_id != "":
                    store.register(self)
                self.initialize_relations(options)
            elif self.id != old_id:
                # also covers a cleared id, which frees the old one
                store.update(self)

            if attributes:
                self.update_relations(attributes, options)
        finally:
            event_queue.unblock()

        return result

    def _set_attributes(self, attrs: Dict[str, Any], options: Dict[str, Any]) -> "RelationalModel":
        unset = options.get("unset")
        silent = options.get("silent")
        changes = []

        changing = self._changing
        self._changing = True
        if not changing:
            self._previous_attributes = dict(self.attributes)
            self.changed = {}

        current, prev = self.attributes, self._previous_attributes
        for attr, val in attrs.items():
            if current.get(attr, _UNSET) is not val and current.get(attr, _UNSET) != val:
                changes.append(attr)
            if prev.get(attr, _UNSET) is not val and prev.get(attr, _UNSET) != val:
                self.changed[attr] = val
            else:
                self.changed.pop(attr, None)
            if unset:
                current.pop(attr, None)
            else:
                current[attr] = val

        if not silent:
            if changes:
                self._pending = options
            for attr in changes:
                self.trigger(f"change:{attr}", self, current.get(attr), options)

        # nested `set` from a change handler
        if changing:
            return self

        if not silent:
            while self._pending is not None:
                pending = self._pending
                self._pending = None
                self.trigger("change", self, pending)
        self._pending = None
        self._changing = False
        return self

    def unset(self, attr: str, **options: Any) -> "RelationalModel":
        return self.set(attr, None, **{**options, "unset": True})

    def has_changed(self, attr: Optional[str] = None) -> bool:
        if attr is None:
            return bool(self.changed)
        return attr in self.changed

    def previous(self, attr: str) -> Any:
        return self._previous_attributes.get(attr)

    def previous_attributes(self) -> Dict[str, Any]:
        return dict(self._previous_attributes)

    # ──────────────────────────────────────────────────────────────────
    # Events
    # ──────────────────────────────────────────────────────────────────

    def trigger(self, name: str, *args: Any, from_relation: bool = False) -> "RelationalModel":
        """
        While :data:`event_queue` is blocked, ``change`` and
        ``change:<attr>`` are queued and re-validated when they run.
        ``destroy`` also unregisters the instance from the store.
        """
        if name == "change" or name.startswith("change:"):
            if not event_queue.is_locked():
                Events.trigger(self, name, *args)
            else:
                event_queue.add(partial(self._trigger_queued_change, name, args, from_relation))
        elif name == "destroy":
            Events.trigger(self, name, *args)
            store.unregister(self)
        else:
            Events.trigger(self, name, *args)
        return self

    def _trigger_queued_change(self, name: str, args: tuple, from_relation: bool) -> None:
        changed = True
        if name == "change":
            # nested `set` calls may have reset `changed`
            changed = self.has_changed() or self._attribute_change_fired
            self._attribute_change_fired = False
        else:
            attr = name[len("change:"):]
            rel = self.get_relation(attr)
            if rel is not None:
                # For relation keys only the relation's own event counts.
                changed = from_relation
                if changed:
                    self.changed[attr] = args[1] if len(args) > 1 else None
                elif not rel.changed:
                    self.changed.pop(attr, None)
            else:
                self._attribute_change_fired = True

        if changed:
            Events.trigger(self, name, *args)

    # ──────────────────────────────────────────────────────────────────
    # Relations
    # ──────────────────────────────────────────────────────────────────

    def initialize_relations(self, options: Optional[Dict[str, Any]] = None) -> None:
        # relations call `set` on this instance while being set up
        self.acquire()
        try:
            self._relations = {}
            for rel in type(self).relations or []:
                store.initialize_relation(self, rel, options)
            self._is_initialized = True
        finally:
            self.release()
        self.process_queue()

    def update_relations(
        self,
        changed_attrs: Optional[Mapping] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Push new raw values of relation keys into their relations."""
        if not self._is_initialized or self.is_locked():
            return

        for rel in list(self._relations.values()):
            if changed_attrs is None or rel.key_source in changed_attrs or rel.key in changed_attrs:
                value = self.attributes.get(rel.key_source)
                if value is None:
                    value = self.attributes.get(rel.key)
                explicit_none = changed_attrs is not None and (
                    changed_attrs.get(rel.key_source) is None and changed_attrs.get(rel.key) is None
                )
                if rel.related is not value or (value is None and explicit_none):
                    self.trigger(f"relational:change:{rel.key}", self, value, dict(options or {}))

            if rel.key_source != rel.key:
                self.attributes.pop(rel.key_source, None)

    def queue(self, func: Callable[[], None]) -> None:
        """Run ``func`` now, or once this instance's relations are set up."""
        self._queue.add(func)

    def process_queue(self) -> None:
        if self._is_initialized and not self._defer_processing and self._queue.is_blocked():
            self._queue.unblock()

    def get_relation(self, attr: str) -> Optional[Relation]:
        return self._relations.get(attr)

    def get_relations(self) -> List[Relation]:
        return list(self._relations.values())

    # ──────────────────────────────────────────────────────────────────
    # Serialisation
    # ──────────────────────────────────────────────────────────────────

    def to_json(self, **options: Any) -> Any:
        """
        Render ``attributes`` with relations projected per their
        ``include_in_json`` policy:

        * ``True`` – nested ``to_json`` of the related value
        * ``"<attr>"`` – that attribute of each related instance; for the
          related ``id_attribute``, ids still awaiting an instance are
          included too
        * ``["<attr>", ...]`` – a dict of those attributes per instance
        * ``False`` – omitted

        An instance already being serialised further up returns its id.
        """
        if self.is_locked():
            return self.id

        self.acquire()
        try:
            json = dict(self.attributes)
            cls = type(self)
            if cls._super_model and cls._sub_model_type_attribute not in json:
                json[cls._sub_model_type_attribute] = cls._sub_model_type_value

            for rel in self._relations.values():
                related = json.get(rel.key)
                include_in_json = rel.options.include_in_json
                value = None

                if include_in_json is True:
                    if related is not None and hasattr(related, "to_json"):
                        value = related.to_json(**options)
                elif isinstance(include_in_json, str):
                    if isinstance(related, Collection):
                        value = related.pluck(include_in_json)
                    elif isinstance(related, RelationalModel):
                        value = related.get(include_in_json)

                    if include_in_json == rel.related_model.id_attribute:
                        if isinstance(rel, HasMany):
                            value = list(value or []) + list(rel.key_ids)
                        else:
                            if value is None:
                                value = rel.key_id
                            if value is None and not isinstance(
                                rel.key_contents, (Mapping, Events, list, tuple)
                            ):
                                value = rel.key_contents
                elif isinstance(include_in_json, list):
                    if isinstance(related, Collection):
                        value = [
                            {field: model.get(field) for field in include_in_json}
                            for model in related.models
                        ]
                    elif isinstance(related, RelationalModel):
                        value = {field: related.get(field) for field in include_in_json}
                else:
                    json.pop(rel.key, None)

                if include_in_json is not False:
                    json[rel.key_destination] = value
                if rel.key_destination != rel.key:
                    json.pop(rel.key, None)
            return json
        finally:
            self.release()

    # ──────────────────────────────────────────────────────────────────
    # Remote
    # ──────────────────────────────────────────────────────────────────

    def url(self) -> str:
        base = self.url_root
        if base is None and self.collection is not None:
            base = self.collection.url()
        if base is None:
            raise ValueError(f"{type(self).__name__} has no 'url_root' and no collection URL")
        if self.is_new():
            return base
        return f"{base.rstrip('/')}/{quote(str(self.id), safe='')}"

    async def fetch(
        self,
        fetcher: Optional[Fetcher] = None,
        url: Optional[str] = None,
        **options: Any,
    ) -> "RelationalModel":
        """GET this instance's URL and ``set`` the parsed response."""
        data = await resolve_fetcher(fetcher, self, self.collection).fetch(url or self.url())
        attributes = self.parse(data, options)
        if attributes:
            self.set(attributes, **options)
        return self

    def get_ids_to_fetch(self, key: Union[str, Relation], refresh: bool = False) -> List[Any]:
        """
        Ids :meth:`get_async` would request for relation ``key``: those
        still awaiting an instance, plus (with ``refresh``) those already
        related.
        """
        rel = key if isinstance(key, Relation) else self.get_relation(key)
        if rel is None:
            return []

        if isinstance(rel, HasMany):
            ids = list(rel.key_ids)
        else:
            ids = [rel.key_id] if rel.key_id is not None else []

        if refresh:
            if isinstance(rel.related, Collection):
                models = list(rel.related.models)
            else:
                models = [rel.related] if rel.related is not None else []
            ids.extend(model.id for model in models if model.id is not None)
        return ids

    async def get_async(
        self,
        key: str,
        refresh: bool = False,
        fetcher: Optional[Fetcher] = None,
        **options: Any,
    ) -> Any:
        """
        Resolve relation ``key``, fetching the instances it is still
        missing, and return its value.

        With a collection declaring ``supports_batch_fetch``, all ids are
        fetched with one request to ``collection.url(ids)``; otherwise each
        missing instance is created as a placeholder and fetched on its
        own. If any request fails, the placeholders whose fetch failed are
        destroyed and the first error is raised.

        Raises
        ------
        FetchError
            On a failed request, or when no fetcher is configured.
        """
        options = {"add": True, "remove": False, **options}
        rel = self.get_relation(key)
        if rel is None:
            raise KeyError(f"{type(self).__name__} has no relation '{key}'")

        ids_to_fetch = self.get_ids_to_fetch(rel, refresh)
        coll = rel.related if isinstance(rel.related, Collection) else rel.related_collection

        if ids_to_fetch:
            related_model = rel.related_model
            if isinstance(coll, Collection) and coll.supports_batch_fetch:
                logger.debug("Batch fetching {} {} for {!r}", len(ids_to_fetch), related_model.__name__, self)
                requests = [coll.fetch(fetcher=fetcher, url=coll.url(ids_to_fetch), **options)]
                models: List[RelationalModel] = []
                created: List[RelationalModel] = []
            else:
                models, created = [], []
                for item_id in ids_to_fetch:
                    model = related_model.find_model(item_id)
                    if model is None:
                        model = related_model.find_or_create({related_model.id_attribute: item_id}, **options)
                        created.append(model)
                    models.append(model)
                model_fetcher = fetcher or getattr(coll, "fetcher", None)
                requests = [model.fetch(fetcher=model_fetcher, **options) for model in models]

            results = await asyncio.gather(*requests, return_exceptions=True)

            errors = [result for result in results if isinstance(result, BaseException)]
            if errors:
                for model, result in zip(models, results):
                    if isinstance(result, BaseException) and any(model is c for c in created):
                        model.trigger("destroy", model, model.collection, options)
                error = errors[0]
                if isinstance(error, FetchError):
                    raise error
                raise FetchError(f"Fetching '{key}' for {self!r} failed: {error}") from error

        return self.get(key)
