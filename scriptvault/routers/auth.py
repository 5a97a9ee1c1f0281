from typing import Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from sqlmodel.ext.asyncio.session import AsyncSession

from scriptvault.core.config import settings
from scriptvault.core.rbac import Actor, get_user_role
from scriptvault.db.engine import get_session


def _read_token(request: Request) -> Optional[str]:
    raw = request.cookies.get("access_token") or request.headers.get("Authorization")
    if not raw:
        return None
    scheme, _, param = raw.partition(" ")
    # cookies may carry the bare token without a scheme
    return param if param else scheme


async def get_current_actor(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> Optional[Actor]:
    token = _read_token(request)
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
    except JWTError:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    email = payload.get("email") or str(user_id)
    role = await get_user_role(session, str(user_id))
    return Actor(id=str(user_id), email=email, role=role)


async def require_actor(actor: Optional[Actor] = Depends(get_current_actor)) -> Actor:
    if not actor:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor
