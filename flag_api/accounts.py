"""
Accounts acting on flags, and role-based permission checks.

uid 0 is the anonymous visitor. Signed-in users carry the "authenticated"
role plus their platform role; the "admin" role passes every check.
"""
from dataclasses import dataclass, field

ANONYMOUS_ROLE = "anonymous"
AUTHENTICATED_ROLE = "authenticated"
ADMIN_ROLE = "admin"

BUILTIN_ROLES = (ANONYMOUS_ROLE, AUTHENTICATED_ROLE, ADMIN_ROLE, "read")


@dataclass(frozen=True)
class Account:
    uid: int
    name: str = ""
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_anonymous(self) -> bool:
        return self.uid == 0

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


ANONYMOUS = Account(uid=0, name="anonymous", roles=frozenset({ANONYMOUS_ROLE}))


def user_account(uid: int, name: str, role: str) -> Account:
    return Account(uid=int(uid), name=name, roles=frozenset({AUTHENTICATED_ROLE, role}))


def dev_account() -> Account:
    """Synthetic admin used when auth is disabled."""
    return user_account(1, "dev", ADMIN_ROLE)
