"""
pydrel.collection
=================
Ordered, unique-by-identity collections of :class:`RelationalModel`
instances.

Two families of events are emitted:

* ``add`` / ``remove`` / ``reset`` / ``sort`` – for external observers.
  They are routed through :data:`pydrel.queues.event_queue`, so they fire
  only once the mutation that caused them has settled.
* ``relational:add`` / ``relational:remove`` / ``relational:reset`` –
  fired synchronously; these drive the relation engine.

Every other event fired by a member bubbles up to the collection, and a
member's ``destroy`` removes it.
"""

from collections.abc import Mapping
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Union,
)

from .events import Events
from .queues import event_queue

if TYPE_CHECKING:  # pragma: no cover
    from .base_class import RelationalModel
    from .fetch import Fetcher

QUEUED_EVENTS = ("add", "remove", "reset", "sort")


def _model_base() -> type:
    from .base_class import RelationalModel

    return RelationalModel


class Collection(Events):
    """
    Ordered set of models, indexed by ``cid`` and by ``id``.

    Class attributes
    ----------------
    model:
        Class used to turn attribute mappings (or ids) into instances via
        ``model.find_or_create``. Relations overwrite it per instance.
    url_root:
        Base URL used by :meth:`url` and :meth:`fetch`.
    supports_batch_fetch:
        Capability flag. When ``True``, :meth:`url` must return a URL that
        fetches exactly the given ids in one request, and
        :meth:`RelationalModel.get_async` will use it instead of one
        request per id.
    """

    model: ClassVar[Optional[type]] = None
    url_root: ClassVar[Optional[str]] = None
    supports_batch_fetch: ClassVar[bool] = False
    comparator: ClassVar[Union[None, str, Callable[[Any], Any]]] = None
    fetcher: ClassVar[Optional["Fetcher"]] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        from .store import store

        store.register_type(cls)

    def __init__(
        self,
        models: Optional[Sequence[Any]] = None,
        model: Optional[type] = None,
        url: Optional[str] = None,
        comparator: Union[None, str, Callable[[Any], Any]] = None,
        **options: Any,
    ) -> None:
        if model is not None:
            self.model = model
        if url is not None:
            self.url_root = url
        if comparator is not None:
            self.comparator = comparator
        self._reset_state()
        if models:
            self.reset(models, **{"silent": True, **options})

    def _reset_state(self) -> None:
        self.models: List["RelationalModel"] = []
        self._by_cid: Dict[str, "RelationalModel"] = {}
        self._by_id: Dict[Any, "RelationalModel"] = {}
        self._id_by_cid: Dict[str, Any] = {}

    # ── events ────────────────────────────────────────────────────────

    def trigger(self, name: str, *args: Any) -> "Collection":
        if name in QUEUED_EVENTS:
            frozen = tuple(dict(arg) if isinstance(arg, dict) else arg for arg in args)
            event_queue.add(lambda: Events.trigger(self, name, *frozen))
        else:
            Events.trigger(self, name, *args)
        return self

    def _on_model_event(self, event: str, *args: Any) -> None:
        if event in ("add", "remove") and len(args) > 1 and args[1] is not self:
            return
        model = args[0] if args else None
        if event == "relational:change:id" and model is not None:
            self._reindex(model)
        if event == "destroy" and model is not None:
            options = args[2] if len(args) > 2 and isinstance(args[2], dict) else {}
            self.remove(model, **options)
        self.trigger(event, *args)

    # ── membership ────────────────────────────────────────────────────

    def get(self, obj: Any) -> Optional["RelationalModel"]:
        """Look up a member by instance, id, cid, or attribute mapping."""
        if obj is None:
            return None
        if isinstance(obj, _model_base()):
            found = self._by_cid.get(obj.cid)
            if found is None and obj.id is not None:
                found = self._by_id.get(obj.id)
            return found
        if isinstance(obj, Mapping):
            id_attribute = getattr(self.model, "id_attribute", "id")
            obj = obj.get(id_attribute)
            if obj is None:
                return None
        try:
            found = self._by_id.get(obj)
            return found if found is not None else self._by_cid.get(obj)
        except TypeError:
            return None

    def contains(self, obj: Any) -> bool:
        return self.get(obj) is not None

    def __contains__(self, obj: Any) -> bool:
        return self.contains(obj)

    def __len__(self) -> int:
        return len(self.models)

    def __iter__(self) -> Iterator["RelationalModel"]:
        return iter(list(self.models))

    def __getitem__(self, index: int) -> "RelationalModel":
        return self.models[index]

    def __repr__(self) -> str:
        model_name = getattr(self.model, "__name__", None)
        return f"<{type(self).__name__} model={model_name} size={len(self.models)}>"

    def pluck(self, attr: str) -> List[Any]:
        return [model.get(attr) for model in self.models]

    def _add_reference(self, model: "RelationalModel") -> None:
        self._by_cid[model.cid] = model
        if model.id is not None:
            self._by_id[model.id] = model
            self._id_by_cid[model.cid] = model.id
        if model.collection is None:
            model.collection = self
        model.on("all", self._on_model_event, self)

    def _remove_reference(self, model: "RelationalModel") -> None:
        self._by_cid.pop(model.cid, None)
        old_id = self._id_by_cid.pop(model.cid, None)
        if old_id is not None and self._by_id.get(old_id) is model:
            del self._by_id[old_id]
        if model.collection is self:
            model.collection = None
        model.off("all", self._on_model_event, self)

    def _reindex(self, model: "RelationalModel") -> None:
        """Refresh the id index after ``model`` changed its id."""
        if self._by_cid.get(model.cid) is not model:
            return
        old_id = self._id_by_cid.pop(model.cid, None)
        if old_id is not None and self._by_id.get(old_id) is model:
            del self._by_id[old_id]
        if model.id is not None and model.id != "":
            self._by_id[model.id] = model
            self._id_by_cid[model.cid] = model.id

    def _prepare_model(self, attrs: Any, options: Dict[str, Any]) -> Optional["RelationalModel"]:
        model_cls = self.model or _model_base()
        if isinstance(attrs, _model_base()):
            if attrs.collection is None:
                attrs.collection = self
            return attrs
        opts = {key: value for key, value in options.items() if key not in ("add", "remove", "at")}
        opts["collection"] = self
        return model_cls.find_or_create(attrs, **opts)

    # ── mutation ──────────────────────────────────────────────────────

    def set(self, models: Any, **options: Any) -> Any:
        """
        Make the collection contain ``models``.

        ``add``, ``remove`` and ``merge`` (all ``True`` by default) control
        which part of the update is applied; ``at`` inserts new members at
        a position instead of appending them.
        """
        options = {"add": True, "remove": True, "merge": True, **options}
        if options.get("parse"):
            models = self.parse(models, options)
        singular = not isinstance(models, (list, tuple))
        items = ([models] if models is not None else []) if singular else list(models)

        prepared: List["RelationalModel"] = []
        try:
            for item in items:
                model = self._prepare_model(item, {**options, "parse": False})
                if model is not None and not any(model is seen for seen in prepared):
                    prepared.append(model)

            if options["remove"]:
                keep = {model.cid for model in prepared}
                stale = [model for model in self.models if model.cid not in keep]
                if stale:
                    self._remove_models(stale, options)

            added: List["RelationalModel"] = []
            if options["add"]:
                at = options.get("at")
                for model in prepared:
                    if self.get(model) is not None:
                        continue
                    self._add_reference(model)
                    if at is None:
                        self.models.append(model)
                    else:
                        self.models.insert(at + len(added), model)
                    added.append(model)

            if added and self.comparator is not None and options.get("at") is None:
                self.sort(silent=True)

            if not options.get("silent"):
                for model in added:
                    self.trigger("add", model, self, options)
                if added and self.comparator is not None and options.get("at") is None:
                    self.trigger("sort", self, options)

            for model in added:
                if self.get(model) is model:
                    self.trigger("relational:add", model, self, options)
        finally:
            for model in prepared:
                model._stop_deferring(self)

        return (prepared[0] if prepared else None) if singular else prepared

    def add(self, models: Any, **options: Any) -> Any:
        return self.set(models, **{"merge": False, **options, "add": True, "remove": False})

    def remove(self, models: Any, **options: Any) -> Any:
        singular = not isinstance(models, (list, tuple))
        items = ([models] if models is not None else []) if singular else list(models)
        removed = self._remove_models(items, options)
        return (removed[0] if removed else None) if singular else removed

    def _remove_models(self, items: Sequence[Any], options: Dict[str, Any]) -> List["RelationalModel"]:
        removed: List["RelationalModel"] = []
        for item in items:
            model = self.get(item)
            if model is None:
                continue
            index = self.models.index(model)
            del self.models[index]
            self._remove_reference(model)
            if not options.get("silent"):
                self.trigger("remove", model, self, {**options, "index": index})
            removed.append(model)
        for model in removed:
            self.trigger("relational:remove", model, self, options)
        return removed

    def reset(self, models: Any = None, **options: Any) -> Any:
        """
        Replace all members without per-member ``add``/``remove`` events.

        Previous members that are not part of the new contents still fire
        ``relational:remove`` (silently) so that reverse relations drop
        them.
        """
        previous = list(self.models)
        for model in previous:
            self._remove_reference(model)
        self._reset_state()
        result = self.add(models, **{"silent": True, **options, "previous_models": previous})
        dropped = [model for model in previous if self.get(model) is not model]
        for model in dropped:
            self.trigger("relational:remove", model, self, {**options, "silent": True})
        if not options.get("silent"):
            self.trigger("reset", self, {**options, "previous_models": previous})
        self.trigger("relational:reset", self, options)
        return result

    def sort(self, **options: Any) -> "Collection":
        if self.comparator is None:
            raise ValueError("Cannot sort a collection without a comparator")
        comparator = self.comparator
        if isinstance(comparator, str):
            self.models.sort(key=lambda model: model.get(comparator))
        else:
            self.models.sort(key=comparator)
        if not options.get("silent"):
            self.trigger("sort", self, options)
        return self

    # ── serialisation / remote ────────────────────────────────────────

    def parse(self, data: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        return data

    def to_json(self, **options: Any) -> List[Any]:
        return [model.to_json(**options) for model in self.models]

    def url(self, ids: Optional[Sequence[Any]] = None) -> str:
        """
        Return the URL for this collection.

        The base implementation ignores ``ids``; collections declaring
        ``supports_batch_fetch = True`` override this to build a URL for a
        set of ids.
        """
        if self.url_root is None:
            raise ValueError(f"{type(self).__name__} has no 'url_root' configured")
        return self.url_root

    async def fetch(
        self,
        fetcher: Optional["Fetcher"] = None,
        url: Optional[str] = None,
        **options: Any,
    ) -> "Collection":
        from .fetch import resolve_fetcher

        data = await resolve_fetcher(fetcher, self, self.model).fetch(url or self.url())
        self.set(self.parse(data, options), **options)
        return self
