from fastapi import APIRouter, Depends
from pydantic import BaseModel

from clinic_backend.auth.dependencies import Actor, get_current_actor

router = APIRouter(tags=["auth"])


class ActorResponse(BaseModel):
    employee_code: str
    capabilities: list[str]


@router.get("/me", response_model=ActorResponse)
def me(actor: Actor = Depends(get_current_actor)):
    return ActorResponse(employee_code=actor.employee_code, capabilities=sorted(actor.capabilities))
