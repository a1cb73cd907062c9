from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.auth import jwt_handler
from backend.core.errors import AppointmentError, ErrorCode
from backend.database import SessionLocal
from backend.models.user import STAFF_ROLE, User

security = HTTPBearer()


@dataclass(frozen=True)
class ActingUser:
    id: str
    role: str
    name: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role == STAFF_ROLE


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> ActingUser:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == user_id).first()
    finally:
        db.close()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return ActingUser(id=user.id, role=user.role, name=user.name)


def require_staff(current_user: ActingUser = Depends(get_current_user)) -> ActingUser:
    if not current_user.is_staff:
        raise AppointmentError(ErrorCode.FORBIDDEN_ACTION, "Forbidden: staff access required")
    return current_user
