from typing import Callable

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict

from clinic_backend.auth import jwt_handler

security = HTTPBearer()

READ_APPOINTMENTS = "appointment:read"
CREATE_APPOINTMENTS = "appointment:create"
UPDATE_APPOINTMENT_STATUS = "appointment:update_status"
DELAY_APPOINTMENTS = "appointment:delay"
RESCHEDULE_APPOINTMENTS = "appointment:reschedule"
VALIDATE_TIME_OFF = "time_off:validate"

ALL_CAPABILITIES = frozenset({
    READ_APPOINTMENTS,
    CREATE_APPOINTMENTS,
    UPDATE_APPOINTMENT_STATUS,
    DELAY_APPOINTMENTS,
    RESCHEDULE_APPOINTMENTS,
    VALIDATE_TIME_OFF,
})


class Actor(BaseModel):
    """The caller of an operation: an employee code and what it may do."""
    model_config = ConfigDict(frozen=True)

    employee_code: str
    capabilities: frozenset[str] = frozenset()

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


def actor_from_token(token: str) -> Actor:
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    employee_code = payload.get("sub")
    if not employee_code:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    capabilities = payload.get("caps") or []
    if not isinstance(capabilities, list):
        raise HTTPException(status_code=401, detail="Invalid token capabilities")

    return Actor(
        employee_code=employee_code,
        capabilities=frozenset(cap for cap in capabilities if cap in ALL_CAPABILITIES),
    )


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    return actor_from_token(credentials.credentials)


def ensure_capability(actor: Actor, capability: str) -> Actor:
    if not actor.can(capability):
        raise HTTPException(status_code=403, detail=f"Missing capability: {capability}")
    return actor


def require_capability(capability: str) -> Callable[..., Actor]:
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        return ensure_capability(actor, capability)

    return dependency
