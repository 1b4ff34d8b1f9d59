"""
pydrel.events
=============
A small synchronous publish/subscribe mixin shared by models, collections,
relations and the store.

* Event names may be space-separated to bind several at once.
* Handlers registered for ``"all"`` receive the event name as their first
  argument, followed by the event's own arguments.
* ``listen_to`` records the subscription on the listener so that
  ``stop_listening`` can undo it without a reference to each callback.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

Callback = Callable[..., Any]


class Events:
    _events: Optional[Dict[str, List[Tuple[Callback, Any]]]] = None
    _listening_to: Optional[Dict[int, Tuple["Events", List[Tuple[str, Callback]]]]] = None

    def on(self, name: str, callback: Callback, context: Any = None) -> "Events":
        if self._events is None:
            self._events = {}
        for event_name in name.split():
            self._events.setdefault(event_name, []).append((callback, context))
        return self

    def off(
        self,
        name: Optional[str] = None,
        callback: Optional[Callback] = None,
        context: Any = None,
    ) -> "Events":
        if not self._events:
            return self
        names = name.split() if name else list(self._events)
        for event_name in names:
            handlers = self._events.get(event_name)
            if not handlers:
                continue
            remaining = [
                (cb, ctx)
                for cb, ctx in handlers
                if (callback is not None and cb != callback)
                or (context is not None and ctx is not context)
            ]
            if remaining:
                self._events[event_name] = remaining
            else:
                del self._events[event_name]
        return self

    def trigger(self, name: str, *args: Any) -> "Events":
        if not self._events:
            return self
        for event_name in name.split():
            # Copy: handlers may unsubscribe while being called.
            for callback, _ in list(self._events.get(event_name, ())):
                callback(*args)
            for callback, _ in list(self._events.get("all", ())):
                callback(event_name, *args)
        return self

    def listen_to(self, other: "Events", name: str, callback: Callback) -> "Events":
        if self._listening_to is None:
            self._listening_to = {}
        _, bindings = self._listening_to.setdefault(id(other), (other, []))
        bindings.append((name, callback))
        other.on(name, callback, self)
        return self

    def stop_listening(
        self,
        other: Optional["Events"] = None,
        name: Optional[str] = None,
        callback: Optional[Callback] = None,
    ) -> "Events":
        if not self._listening_to:
            return self
        targets = [other] if other is not None else [obj for obj, _ in self._listening_to.values()]
        for target in targets:
            entry = self._listening_to.get(id(target))
            if entry is None:
                continue
            target.off(name, callback, self)
            if name is None and callback is None:
                del self._listening_to[id(target)]
                continue
            bindings = [
                (n, cb)
                for n, cb in entry[1]
                if (name is not None and n != name) or (callback is not None and cb != callback)
            ]
            if bindings:
                self._listening_to[id(target)] = (target, bindings)
            else:
                del self._listening_to[id(target)]
        return self
