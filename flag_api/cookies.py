"""
Cookie mirror of anonymous flaggings.

Pages served from a shared cache cannot render per-visitor flag state, so
anonymous toggles are also recorded in cookies that the page's script reads.
Non-global flags share one "flags" cookie listing "<flag>_<entity_id>"
items; each global flag entity gets its own "flag_global_<flag>_<id>" cookie.
"""


class FlagCookieStorage:

    def __init__(self, flag, session):
        self.handler = flag
        self.session = session

    @staticmethod
    def factory(flag, session) -> "FlagCookieStorage":
        if flag.is_global:
            return GlobalCookieStorage(flag, session)
        return NonGlobalCookieStorage(flag, session)

    def flag(self, entity_id):
        raise NotImplementedError

    def unflag(self, entity_id):
        raise NotImplementedError


class GlobalCookieStorage(FlagCookieStorage):

    def _cookie_name(self, entity_id) -> str:
        return f"flag_global_{self.handler.name}_{entity_id}"

    def flag(self, entity_id):
        self.session.set_cookie(self._cookie_name(entity_id), "1")

    def unflag(self, entity_id):
        self.session.set_cookie(self._cookie_name(entity_id), "0")


class NonGlobalCookieStorage(FlagCookieStorage):
    COOKIE_NAME = "flags"

    def _items(self) -> list[str]:
        raw = self.session.get_cookie(self.COOKIE_NAME) or ""
        return [item for item in raw.split(" ") if item]

    def _save(self, items: list[str]):
        self.session.set_cookie(self.COOKIE_NAME, " ".join(items) if items else None)

    def flag(self, entity_id):
        item = f"{self.handler.name}_{entity_id}"
        items = self._items()
        if item not in items:
            items.append(item)
        self._save(items)

    def unflag(self, entity_id):
        item = f"{self.handler.name}_{entity_id}"
        self._save([i for i in self._items() if i != item])
