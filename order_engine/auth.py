from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy import select

from order_engine.config import get_settings
from order_engine.database import session_scope
from order_engine.models import Merchant


def _actor_from_header(authorization: Optional[str]) -> str:
    try:
        if not authorization:
            raise ValueError("missing header")
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        actor_id = claims.get("sub")
        if not actor_id:
            raise ValueError("token has no subject")
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return actor_id


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """Require a bearer token and return the actor id from its ``sub`` claim."""
    return _actor_from_header(authorization)


def optional_actor(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    return _actor_from_header(authorization)


class MerchantDirectory:
    """Maps authenticated actors to the merchant they operate."""

    def __init__(self, session_factory=session_scope):
        self._session_factory = session_factory

    def resolve_actor_merchant(self, actor_id: Optional[str]) -> Optional[str]:
        if not actor_id:
            return None
        with self._session_factory() as session:
            return session.execute(
                select(Merchant.id).where(Merchant.user_id == actor_id)
            ).scalar_one_or_none()
