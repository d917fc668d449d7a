# caseflow/api/v1/deps.py

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import jwt

from caseflow.db.database import get_db
from caseflow.db.models import User
from caseflow.core.config import settings
from caseflow.utils.exceptions import AdminRequiredError, InvalidWebhookTokenError

security = HTTPBearer(auto_error=False)

# ============================================================================
# JWT Dependency
# ============================================================================

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Validate JWT token and return current user.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    token = credentials.credentials

    try:
        # exp is verified by PyJWT when present
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    # Accept either "sub" (standard) or "user_id"
    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    user = db.query(User).filter(User.id == str(user_id)).first()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated"
        )

    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise AdminRequiredError()
    return current_user


# ============================================================================
# Backend callback auth
# ============================================================================

def verify_webhook_token(
    x_webhook_token: Optional[str] = Header(None, alias="X-Webhook-Token"),
) -> None:
    """
    Shared-secret check for analysis backend callbacks. Disabled when
    WEBHOOK_TOKEN is empty.
    """
    expected = (settings.WEBHOOK_TOKEN or "").strip()
    if not expected:
        return
    if not x_webhook_token or not hmac.compare_digest(x_webhook_token.strip(), expected):
        raise InvalidWebhookTokenError()
