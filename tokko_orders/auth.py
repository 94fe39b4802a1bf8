"""
呼び出し元の識別

認証そのものは前段のゲートウェイが行い、検証済みの情報を
X-User-* ヘッダで渡してくる前提。ここではそれを Identity にするだけ。
"""

from fastapi import Depends, Header

from .errors import AccessDenied, Unauthenticated
from .models import Identity, Role


async def current_identity(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_phone: str | None = Header(default=None),
) -> Identity:
    if not x_user_id or not x_user_email:
        raise Unauthenticated("Unauthorized")

    role = Role.ADMIN if (x_user_role or "").lower() == Role.ADMIN.value else Role.USER
    return Identity(
        user_id=x_user_id,
        role=role,
        email=x_user_email,
        name=x_user_name or "",
        phone=x_user_phone or "",
    )


def require_admin(identity: Identity) -> Identity:
    if not identity.is_admin:
        raise AccessDenied("Admin access required.")
    return identity


async def admin_identity(identity: Identity = Depends(current_identity)) -> Identity:
    return require_admin(identity)
