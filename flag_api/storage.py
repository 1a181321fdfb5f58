"""
SQL access for flags, flaggings, counts, permissions and users.

Every query the service runs lives here. A FlagStorage opens a pooled
connection per call, or reuses the connection of an open transaction() so
that several calls commit or roll back together.
"""
import json
from contextlib import contextmanager
from typing import Optional

from .database import get_db

_BOOTSTRAP_LOCK_ID = 900_001


class FlagStorage:

    def __init__(self):
        self._conn = None

    @contextmanager
    def transaction(self):
        """Run the enclosed storage calls in one transaction. Nested calls join the outer one."""
        if self._conn is not None:
            yield self
            return
        with get_db() as conn:
            self._conn = conn
            try:
                yield self
            finally:
                self._conn = None

    @contextmanager
    def _cursor(self):
        if self._conn is not None:
            with self._conn.cursor() as cur:
                yield cur
        else:
            with get_db() as conn:
                with conn.cursor() as cur:
                    yield cur

    # ---------- Flags ----------

    def load_flags(self) -> list[dict]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT f.fid, f.entity_type, f.name, f.title, f."global", f.options,
                       COALESCE(array_agg(ft.type) FILTER (WHERE ft.type IS NOT NULL), '{}') AS types
                FROM flag f
                LEFT JOIN flag_types ft ON ft.fid = f.fid
                GROUP BY f.fid
                ORDER BY f.fid
            """)
            rows = cur.fetchall()
        flags = []
        for row in rows:
            row = dict(row)
            row["options"] = json.loads(row["options"]) if row.get("options") else {}
            row["types"] = list(row.get("types") or [])
            flags.append(row)
        return flags

    def insert_flag(self, entity_type: str, name: str, title: str, is_global: int,
                    options: dict, types: list) -> int:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO flag (entity_type, name, title, "global", options)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING fid
            """, [entity_type, name, title, is_global, json.dumps(options)])
            fid = cur.fetchone()["fid"]
            for bundle in types:
                cur.execute("INSERT INTO flag_types (fid, type) VALUES (%s, %s)", [fid, bundle])
        return fid

    def update_flag(self, fid: int, name: str, title: str, is_global: int,
                    options: dict, types: list):
        with self._cursor() as cur:
            cur.execute("""
                UPDATE flag SET name = %s, title = %s, "global" = %s, options = %s
                WHERE fid = %s
            """, [name, title, is_global, json.dumps(options), fid])
            cur.execute("DELETE FROM flag_types WHERE fid = %s", [fid])
            for bundle in types:
                cur.execute("INSERT INTO flag_types (fid, type) VALUES (%s, %s)", [fid, bundle])

    def delete_flag(self, fid: int):
        with self._cursor() as cur:
            cur.execute("DELETE FROM flagging WHERE fid = %s", [fid])
            cur.execute("DELETE FROM flag_types WHERE fid = %s", [fid])
            cur.execute("DELETE FROM flag_counts WHERE fid = %s", [fid])
            cur.execute("DELETE FROM flag WHERE fid = %s", [fid])

    # ---------- Flaggings ----------

    def find_flagging_id(self, fid: int, entity_id: int, uid: int, sid: str) -> Optional[int]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT flagging_id FROM flagging
                WHERE fid = %s AND uid = %s AND sid = %s AND entity_id = %s
            """, [fid, uid, sid, entity_id])
            row = cur.fetchone()
        return row["flagging_id"] if row else None

    def insert_flagging(self, fid: int, entity_type: str, entity_id: int, uid: int,
                        sid: str, timestamp: int) -> int:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO flagging (fid, entity_type, entity_id, uid, sid, "timestamp")
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING flagging_id
            """, [fid, entity_type, entity_id, uid, sid, timestamp])
            return cur.fetchone()["flagging_id"]

    def update_flagging(self, flagging_id: int, timestamp: int):
        with self._cursor() as cur:
            cur.execute('UPDATE flagging SET "timestamp" = %s WHERE flagging_id = %s',
                        [timestamp, flagging_id])

    def lock_flagging(self, flagging_id: int) -> bool:
        """Row-lock a flagging for the enclosing transaction. False once it is gone."""
        with self._cursor() as cur:
            cur.execute("SELECT flagging_id FROM flagging WHERE flagging_id = %s FOR UPDATE",
                        [flagging_id])
            return cur.fetchone() is not None

    def delete_flagging(self, flagging_id: int):
        with self._cursor() as cur:
            cur.execute("DELETE FROM flagging WHERE flagging_id = %s", [flagging_id])

    def load_flagging(self, flagging_id: int) -> Optional[dict]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT fc.flagging_id, fc.fid, f.name AS flag_name, fc.entity_type,
                       fc.entity_id, fc.uid, fc.sid, fc."timestamp"
                FROM flagging fc
                JOIN flag f ON f.fid = fc.fid
                WHERE fc.flagging_id = %s
            """, [flagging_id])
            row = cur.fetchone()
        return dict(row) if row else None

    def user_flaggings(self, entity_type: str, entity_id: Optional[int], uid: int,
                       sid: str) -> list[dict]:
        """Flaggings of one user/session plus all global flaggings for an entity type."""
        conditions = ["fc.entity_type = %s",
                      "((fc.uid = %s AND fc.sid = %s) OR (fc.uid = 0 AND fc.sid = ''))"]
        params = [entity_type, uid, sid]
        if entity_id is not None:
            conditions.append("fc.entity_id = %s")
            params.append(entity_id)
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT fc.flagging_id, fc.fid, f.name AS flag_name, fc.entity_type,
                       fc.entity_id, fc.uid, fc.sid, fc."timestamp"
                FROM flagging fc
                JOIN flag f ON f.fid = fc.fid
                WHERE {" AND ".join(conditions)}
                ORDER BY fc.flagging_id
            """, params)
            return [dict(r) for r in cur.fetchall()]

    def entity_flaggings(self, entity_type: str, entity_id: int,
                         fid: Optional[int] = None) -> list[dict]:
        conditions = ["fc.entity_type = %s", "fc.entity_id = %s"]
        params = [entity_type, entity_id]
        if fid is not None:
            conditions.append("fc.fid = %s")
            params.append(fid)
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT fc.flagging_id, fc.fid, f.name AS flag_name, fc.uid,
                       fc.uid = 0 AS anonymous, fc."timestamp", u.username
                FROM flagging fc
                JOIN flag f ON f.fid = fc.fid
                LEFT JOIN platform_users u ON u.id = fc.uid
                WHERE {" AND ".join(conditions)}
                ORDER BY fc."timestamp" DESC, fc.flagging_id DESC
            """, params)
            return [dict(r) for r in cur.fetchall()]

    def count_user_flaggings(self, fid: int, uid: int, sid: str) -> int:
        with self._cursor() as cur:
            cur.execute("""
                SELECT COUNT(*) AS total FROM flagging
                WHERE fid = %s AND uid = %s AND sid = %s
            """, [fid, uid, sid])
            return cur.fetchone()["total"]

    def flaggings_for_reset(self, fid: int, entity_id: Optional[int] = None) -> list[dict]:
        params = [fid]
        extra = ""
        if entity_id is not None:
            extra = " AND entity_id = %s"
            params.append(entity_id)
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT flagging_id, fid, entity_type, entity_id, uid, sid, "timestamp"
                FROM flagging
                WHERE fid = %s{extra}
                ORDER BY flagging_id
            """, params)
            return [dict(r) for r in cur.fetchall()]

    def delete_flaggings(self, fid: int, entity_id: Optional[int] = None) -> int:
        params = [fid]
        extra = ""
        if entity_id is not None:
            extra = " AND entity_id = %s"
            params.append(entity_id)
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM flagging WHERE fid = %s{extra}", params)
            return cur.rowcount

    # ---------- Counts ----------

    def increase_count(self, fid: int, entity_type: str, entity_id: int, number: int,
                       timestamp: int):
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO flag_counts (fid, entity_type, entity_id, count, last_updated)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (fid, entity_id)
                DO UPDATE SET count = flag_counts.count + EXCLUDED.count,
                              last_updated = EXCLUDED.last_updated
            """, [fid, entity_type, entity_id, number, timestamp])

    def decrease_count(self, fid: int, entity_id: int, number: int, timestamp: int):
        with self._cursor() as cur:
            # Rows that would reach zero are removed, never left at 0 or below.
            cur.execute("""
                DELETE FROM flag_counts
                WHERE fid = %s AND entity_id = %s AND count <= %s
            """, [fid, entity_id, number])
            cur.execute("""
                UPDATE flag_counts SET count = count - %s, last_updated = %s
                WHERE fid = %s AND entity_id = %s
            """, [number, timestamp, fid, entity_id])

    def entity_counts(self, entity_type: str, entity_id: int) -> list[dict]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT f.name AS flag_name, fc.fid, fc.count
                FROM flag_counts fc
                JOIN flag f ON f.fid = fc.fid
                WHERE fc.entity_type = %s AND fc.entity_id = %s
            """, [entity_type, entity_id])
            return [dict(r) for r in cur.fetchall()]

    def top_counts(self, fid: int, limit: int, offset: int = 0) -> list[dict]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT entity_type, entity_id, count, last_updated
                FROM flag_counts
                WHERE fid = %s
                ORDER BY count DESC, last_updated DESC
                LIMIT %s OFFSET %s
            """, [fid, limit, offset])
            return [dict(r) for r in cur.fetchall()]

    def delete_counts(self, fid: int, entity_id: Optional[int] = None):
        params = [fid]
        extra = ""
        if entity_id is not None:
            extra = " AND entity_id = %s"
            params.append(entity_id)
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM flag_counts WHERE fid = %s{extra}", params)

    # ---------- Permissions ----------

    def permissions_for_roles(self, roles) -> set:
        roles = list(roles)
        if not roles:
            return set()
        with self._cursor() as cur:
            cur.execute(
                "SELECT DISTINCT permission FROM role_permissions WHERE role = ANY(%s)",
                [roles],
            )
            return {r["permission"] for r in cur.fetchall()}

    def roles_with_permission(self, permission: str) -> list[str]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT role FROM role_permissions WHERE permission = %s ORDER BY role",
                [permission],
            )
            return [r["role"] for r in cur.fetchall()]

    def set_role_permissions(self, role: str, changes: dict):
        """Grant permissions mapped to True, revoke those mapped to False."""
        with self._cursor() as cur:
            for permission, granted in changes.items():
                if granted:
                    cur.execute("""
                        INSERT INTO role_permissions (role, permission) VALUES (%s, %s)
                        ON CONFLICT DO NOTHING
                    """, [role, permission])
                else:
                    cur.execute(
                        "DELETE FROM role_permissions WHERE role = %s AND permission = %s",
                        [role, permission],
                    )

    def revoke_permissions(self, permissions):
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM role_permissions WHERE permission = ANY(%s)",
                [list(permissions)],
            )

    def all_roles(self) -> list[str]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT role FROM role_permissions
                UNION
                SELECT role FROM platform_users
                ORDER BY role
            """)
            return [r["role"] for r in cur.fetchall()]

    # ---------- Variables ----------

    def get_variable(self, name: str, default=None):
        with self._cursor() as cur:
            cur.execute("SELECT value FROM flag_variables WHERE name = %s", [name])
            row = cur.fetchone()
        return json.loads(row["value"]) if row else default

    def set_variable(self, name: str, value):
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO flag_variables (name, value) VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value
            """, [name, json.dumps(value)])

    # ---------- Entities and users ----------

    def load_entity(self, entity_type: str, entity_id: int) -> Optional[dict]:
        with self._cursor() as cur:
            if entity_type == "user":
                cur.execute("""
                    SELECT 'user' AS entity_type, id AS entity_id, 'user' AS bundle,
                           username AS label, '/user/' || id AS url, id AS uid
                    FROM platform_users WHERE id = %s
                """, [entity_id])
            else:
                cur.execute("""
                    SELECT entity_type, entity_id, bundle, label, url, uid
                    FROM content_entities
                    WHERE entity_type = %s AND entity_id = %s
                """, [entity_type, entity_id])
            row = cur.fetchone()
        return dict(row) if row else None

    def load_user_by_name(self, username: str) -> Optional[dict]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, username, password_hash, role FROM platform_users WHERE username = %s",
                [username],
            )
            row = cur.fetchone()
        return dict(row) if row else None

    def lock_user_bootstrap(self):
        """Serialize first-user registration. Only meaningful inside transaction()."""
        with self._cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", [_BOOTSTRAP_LOCK_ID])

    def count_users(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM platform_users")
            return cur.fetchone()["total"]

    def insert_user(self, username: str, password_hash: str, role: str) -> int:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO platform_users (username, password_hash, role)
                VALUES (%s, %s, %s)
                RETURNING id
            """, [username, password_hash, role])
            return cur.fetchone()["id"]
