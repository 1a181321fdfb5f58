"""
Per-request visitor state: the acting account, the anonymous session id
and the cookies to write back with the response.
"""
import secrets
from dataclasses import dataclass, field
from typing import Optional

from .accounts import ANONYMOUS, Account
from .config import SESSION_COOKIE_NAME


@dataclass
class FlagSession:
    account: Account = ANONYMOUS
    sid: str = ""
    cookies: dict = field(default_factory=dict)
    # name -> value; None deletes the cookie
    outgoing: dict = field(default_factory=dict)

    def ensure_sid(self) -> str:
        if not self.sid:
            self.sid = secrets.token_hex(16)
            self.outgoing[SESSION_COOKIE_NAME] = self.sid
        return self.sid

    def get_cookie(self, name: str) -> Optional[str]:
        if name in self.outgoing:
            return self.outgoing[name]
        return self.cookies.get(name)

    def set_cookie(self, name: str, value: Optional[str]):
        self.outgoing[name] = value
