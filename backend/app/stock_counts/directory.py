"""
People directory backed by the `profiles` table.

Read-only: the stock count engine never writes people records.
"""
from __future__ import annotations

from typing import Optional, Sequence


class PgPeopleDirectory:
    def __init__(self, conn):
        self.conn = conn

    def list_people(
        self,
        company_id: str,
        site_id: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
    ) -> list:
        sql = """
          SELECT id, full_name AS name, app_role AS role, email
          FROM profiles
          WHERE company_id=%s AND is_active=true
        """
        params: list = [company_id]
        if site_id:
            sql += " AND site_id=%s"
            params.append(site_id)
        if roles is not None:
            sql += " AND lower(btrim(app_role)) = ANY(%s::text[])"
            params.append([r.strip().lower() for r in roles])
        sql += " ORDER BY lower(COALESCE(full_name, email, '')) ASC, id ASC"
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return [
                {"id": str(r["id"]), "name": r.get("name"), "role": r.get("role"), "email": r.get("email")}
                for r in (cur.fetchall() or [])
            ]

    def distinct_roles(self, company_id: str) -> list:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT app_role AS role
                FROM profiles
                WHERE company_id=%s AND is_active=true AND app_role IS NOT NULL
                ORDER BY app_role
                """,
                (company_id,),
            )
            return [r["role"] for r in (cur.fetchall() or [])]
