"""
Hook registry: named extension points other modules implement.

Usage:
    from flag_api.hooks import hook

    @hook("flag_validate")
    def limit_bookmarks(action, flag, entity_id, account, skip_permission_check, flagging):
        if flag.name == "bookmarks" and action == "flag":
            ...
            return {"access-denied": "You may only bookmark 10 items."}

Hooks dispatched by the flag service:
    flag_validate, flag_access, flag_access_multiple, flag_reset,
    flag_flag, flag_unflag, flag_delete, flag_default_flags
Alter hooks (receive a mutable value):
    flag_alter, flag_options_alter, flag_type_info_alter, flag_javascript_info_alter
"""
import logging
from collections import defaultdict
from typing import Callable

log = logging.getLogger("flag_api.hooks")


class HookRegistry:
    """Implementations per hook name, called in registration order."""

    def __init__(self):
        self._impls: dict[str, list[tuple[str, Callable]]] = defaultdict(list)

    def register(self, name: str, fn: Callable, module: str = None) -> Callable:
        module = module or getattr(fn, "__module__", "") or "anonymous"
        self._impls[name].append((module, fn))
        log.debug("Registered %s.%s for hook %s", module, getattr(fn, "__name__", fn), name)
        return fn

    def unregister(self, name: str, fn: Callable):
        self._impls[name] = [(m, f) for m, f in self._impls[name] if f is not fn]

    def clear(self):
        self._impls.clear()

    def implements(self, name: str) -> list[str]:
        """Modules implementing a hook."""
        return [module for module, _ in self._impls.get(name, [])]

    def invoke(self, module: str, name: str, *args):
        """Call one module's implementations; results as invoke_all returns them."""
        return self._collect([fn for m, fn in self._impls.get(name, []) if m == module], args)

    def invoke_all(self, name: str, *args) -> list:
        """Call every implementation. None results are dropped, list results flattened."""
        return self._collect([fn for _, fn in self._impls.get(name, [])], args)

    def invoke_all_merged(self, name: str, *args) -> dict:
        """Call every implementation and merge their dict results, later keys winning."""
        merged = {}
        for _, fn in list(self._impls.get(name, [])):
            result = fn(*args)
            if result:
                merged.update(result)
        return merged

    def alter(self, name: str, data, *context):
        """Let implementations modify data in place."""
        for _, fn in list(self._impls.get(name, [])):
            fn(data, *context)
        return data

    @staticmethod
    def _collect(fns, args) -> list:
        results = []
        for fn in fns:
            result = fn(*args)
            if result is None:
                continue
            if isinstance(result, list):
                results.extend(result)
            else:
                results.append(result)
        return results


registry = HookRegistry()


def hook(name: str, module: str = None):
    """Decorator registering a function as an implementation of a hook."""
    def decorator(fn):
        return registry.register(name, fn, module)
    return decorator


invoke_all = registry.invoke_all
invoke_all_merged = registry.invoke_all_merged
alter = registry.alter
