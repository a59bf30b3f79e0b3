from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from aad_group_roles.entra.context import TokenContext
from aad_group_roles.security.dependencies import get_current_principal

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
def index() -> str:
    return "Im authenticated (no role required)."


@router.get("/roletest", response_class=PlainTextResponse)
def role_test() -> str:
    return "You passed the role test!"


@router.get("/accessdenied", response_class=PlainTextResponse)
def access_denied() -> str:
    return "Access denied!"


@router.get("/me")
def me(principal: TokenContext = Depends(get_current_principal)) -> dict:
    return principal.to_dict()
