"""
In-memory stand-in for FlagStorage.

Mirrors the public methods of flag_api.storage.FlagStorage over plain dicts so
API and handler tests run without PostgreSQL. transaction() snapshots the
state and restores it when the block raises, like a rolled back transaction.
"""
import copy
import itertools
from contextlib import contextmanager

import psycopg2.errors

from flag_api.accounts import dev_account, user_account

ADMIN = dev_account()
ALICE = user_account(2, "alice", "read")
BOB = user_account(3, "bob", "read")

_STATE = ("flags", "flaggings", "counts", "permissions", "variables", "entities", "users")


class FakeStorage:

    def __init__(self):
        self.flags = {}
        self.flaggings = {}
        self.counts = {}
        self.permissions = set()
        self.variables = {}
        self.entities = {}
        self.users = {}
        self._ids = {name: itertools.count(1) for name in ("fid", "flagging_id")}
        self._user_ids = itertools.count(100)
        self._in_transaction = False
        self.commits = 0
        self.rollbacks = 0

    # ---------- Seeding ----------

    def add_entity(self, entity_type, entity_id, bundle="", label="", url=None, uid=0):
        self.entities[(entity_type, entity_id)] = {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "bundle": bundle,
            "label": label,
            "url": url,
            "uid": uid,
        }

    def add_user(self, uid, username, role="read", password_hash="x"):
        self.users[uid] = {"id": uid, "username": username, "password_hash": password_hash, "role": role}

    # ---------- Transactions ----------

    @contextmanager
    def transaction(self):
        if self._in_transaction:
            yield self
            return
        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _STATE}
        self._in_transaction = True
        try:
            yield self
        except Exception:
            for name, value in snapshot.items():
                setattr(self, name, value)
            self.rollbacks += 1
            raise
        else:
            self.commits += 1
        finally:
            self._in_transaction = False

    # ---------- Flags ----------

    def load_flags(self):
        return [
            {**copy.deepcopy(row), "types": list(row["types"])}
            for _, row in sorted(self.flags.items())
        ]

    def insert_flag(self, entity_type, name, title, is_global, options, types):
        fid = next(self._ids["fid"])
        self.flags[fid] = {
            "fid": fid, "entity_type": entity_type, "name": name, "title": title,
            "global": is_global, "options": copy.deepcopy(options), "types": list(types),
        }
        return fid

    def update_flag(self, fid, name, title, is_global, options, types):
        self.flags[fid].update({
            "name": name, "title": title, "global": is_global,
            "options": copy.deepcopy(options), "types": list(types),
        })

    def delete_flag(self, fid):
        self.flaggings = {k: v for k, v in self.flaggings.items() if v["fid"] != fid}
        self.counts = {k: v for k, v in self.counts.items() if v["fid"] != fid}
        self.flags.pop(fid, None)

    # ---------- Flaggings ----------

    def _with_name(self, row):
        return {**row, "flag_name": self.flags[row["fid"]]["name"]}

    def find_flagging_id(self, fid, entity_id, uid, sid):
        for row in self.flaggings.values():
            if (row["fid"], row["entity_id"], row["uid"], row["sid"]) == (fid, entity_id, uid, sid):
                return row["flagging_id"]
        return None

    def insert_flagging(self, fid, entity_type, entity_id, uid, sid, timestamp):
        if self.find_flagging_id(fid, entity_id, uid, sid):
            raise psycopg2.errors.UniqueViolation("duplicate key value violates unique constraint")
        flagging_id = next(self._ids["flagging_id"])
        self.flaggings[flagging_id] = {
            "flagging_id": flagging_id, "fid": fid, "entity_type": entity_type,
            "entity_id": entity_id, "uid": uid, "sid": sid, "timestamp": timestamp,
        }
        return flagging_id

    def update_flagging(self, flagging_id, timestamp):
        self.flaggings[flagging_id]["timestamp"] = timestamp

    def lock_flagging(self, flagging_id):
        return flagging_id in self.flaggings

    def delete_flagging(self, flagging_id):
        self.flaggings.pop(flagging_id, None)

    def load_flagging(self, flagging_id):
        row = self.flaggings.get(flagging_id)
        return self._with_name(row) if row else None

    def user_flaggings(self, entity_type, entity_id, uid, sid):
        return [
            self._with_name(row) for _, row in sorted(self.flaggings.items())
            if row["entity_type"] == entity_type
            and (entity_id is None or row["entity_id"] == entity_id)
            and ((row["uid"], row["sid"]) == (uid, sid) or (row["uid"], row["sid"]) == (0, ""))
        ]

    def entity_flaggings(self, entity_type, entity_id, fid=None):
        rows = [
            {
                "flagging_id": row["flagging_id"], "fid": row["fid"],
                "flag_name": self.flags[row["fid"]]["name"], "uid": row["uid"],
                "anonymous": row["uid"] == 0, "timestamp": row["timestamp"],
                "username": self.users.get(row["uid"], {}).get("username"),
            }
            for row in self.flaggings.values()
            if row["entity_type"] == entity_type and row["entity_id"] == entity_id
            and (fid is None or row["fid"] == fid)
        ]
        return sorted(rows, key=lambda r: (r["timestamp"], r["flagging_id"]), reverse=True)

    def count_user_flaggings(self, fid, uid, sid):
        return sum(1 for row in self.flaggings.values()
                   if (row["fid"], row["uid"], row["sid"]) == (fid, uid, sid))

    def flaggings_for_reset(self, fid, entity_id=None):
        return [copy.deepcopy(row) for _, row in sorted(self.flaggings.items())
                if row["fid"] == fid and (entity_id is None or row["entity_id"] == entity_id)]

    def delete_flaggings(self, fid, entity_id=None):
        doomed = [k for k, row in self.flaggings.items()
                  if row["fid"] == fid and (entity_id is None or row["entity_id"] == entity_id)]
        for key in doomed:
            del self.flaggings[key]
        return len(doomed)

    # ---------- Counts ----------

    def increase_count(self, fid, entity_type, entity_id, number, timestamp):
        row = self.counts.setdefault((fid, entity_id), {
            "fid": fid, "entity_type": entity_type, "entity_id": entity_id, "count": 0,
        })
        row["count"] += number
        row["last_updated"] = timestamp

    def decrease_count(self, fid, entity_id, number, timestamp):
        row = self.counts.get((fid, entity_id))
        if row is None:
            return
        if row["count"] <= number:
            del self.counts[(fid, entity_id)]
        else:
            row["count"] -= number
            row["last_updated"] = timestamp

    def entity_counts(self, entity_type, entity_id):
        return [
            {"flag_name": self.flags[row["fid"]]["name"], "fid": row["fid"], "count": row["count"]}
            for row in self.counts.values()
            if row["entity_type"] == entity_type and row["entity_id"] == entity_id
        ]

    def top_counts(self, fid, limit, offset=0):
        rows = sorted((dict(row) for row in self.counts.values() if row["fid"] == fid),
                      key=lambda r: (-r["count"], -r["last_updated"]))
        return [
            {k: row[k] for k in ("entity_type", "entity_id", "count", "last_updated")}
            for row in rows[offset:offset + limit]
        ]

    def delete_counts(self, fid, entity_id=None):
        self.counts = {k: v for k, v in self.counts.items()
                       if not (v["fid"] == fid and (entity_id is None or v["entity_id"] == entity_id))}

    # ---------- Permissions ----------

    def permissions_for_roles(self, roles):
        roles = set(roles)
        return {permission for role, permission in self.permissions if role in roles}

    def roles_with_permission(self, permission):
        return sorted(role for role, p in self.permissions if p == permission)

    def set_role_permissions(self, role, changes):
        for permission, granted in changes.items():
            if granted:
                self.permissions.add((role, permission))
            else:
                self.permissions.discard((role, permission))

    def revoke_permissions(self, permissions):
        permissions = set(permissions)
        self.permissions = {(r, p) for r, p in self.permissions if p not in permissions}

    def all_roles(self):
        return sorted({role for role, _ in self.permissions} | {u["role"] for u in self.users.values()})

    # ---------- Variables ----------

    def get_variable(self, name, default=None):
        return copy.deepcopy(self.variables.get(name, default))

    def set_variable(self, name, value):
        self.variables[name] = copy.deepcopy(value)

    # ---------- Entities and users ----------

    def load_entity(self, entity_type, entity_id):
        if entity_type == "user":
            user = self.users.get(entity_id)
            if user is None:
                return None
            return {
                "entity_type": "user", "entity_id": user["id"], "bundle": "user",
                "label": user["username"], "url": f"/user/{user['id']}", "uid": user["id"],
            }
        row = self.entities.get((entity_type, entity_id))
        return dict(row) if row else None

    def load_user_by_name(self, username):
        for user in self.users.values():
            if user["username"] == username:
                return dict(user)
        return None

    def lock_user_bootstrap(self):
        pass

    def count_users(self):
        return len(self.users)

    def insert_user(self, username, password_hash, role):
        if self.load_user_by_name(username):
            raise psycopg2.errors.UniqueViolation("duplicate key value violates unique constraint")
        uid = next(self._user_ids)
        self.add_user(uid, username, role, password_hash)
        return uid
