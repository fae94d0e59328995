from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, set_company_context
from datetime import datetime, timezone
from typing import Optional


# Sessions are issued by the host application; this service only validates them.
SESSION_COOKIE_NAME = "stockcounts_session"


def _bearer_or_cookie(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _bearer_or_cookie(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active, s.active_company_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
    if not row or not row["is_active"] or row["expires_at"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="invalid token")
    return {
        "session_id": row["session_id"],
        "user_id": str(row["user_id"]),
        "email": row["email"],
        "active_company_id": row["active_company_id"],
    }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_actor_id(user=Depends(get_current_user)) -> str:
    """The identity every stock count action is recorded against."""
    return user["user_id"]


def get_company_id(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    session=Depends(get_session),
) -> str:
    company_id = x_company_id or session.get("active_company_id")
    if not company_id:
        raise HTTPException(status_code=400, detail="missing company id")
    return str(company_id)


def _user_has(company_id: str, user_id: str, permission: Optional[str] = None) -> bool:
    # Membership only when no permission code is given.
    sql = "SELECT 1 FROM user_roles ur WHERE ur.user_id = %s AND ur.company_id = %s"
    params = [user_id, company_id]
    if permission:
        sql = """
          SELECT 1
          FROM user_roles ur
          JOIN role_permissions rp ON rp.role_id = ur.role_id
          JOIN permissions p ON p.id = rp.permission_id
          WHERE ur.user_id = %s AND ur.company_id = %s AND p.code = %s
        """
        params.append(permission)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(sql + " LIMIT 1", params)
            return cur.fetchone() is not None


def require_company_access(company_id: str = Depends(get_company_id), actor_id: str = Depends(get_actor_id)):
    if not _user_has(company_id, actor_id):
        raise HTTPException(status_code=403, detail="no company access")
    return True


def require_permission(code: str):
    def _dep(company_id: str = Depends(get_company_id), actor_id: str = Depends(get_actor_id)):
        if not _user_has(company_id, actor_id, code):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep
